from __future__ import annotations

import logging
import os
from typing import Protocol, runtime_checkable

from snapsync.errors import AuthExpiredError


logger = logging.getLogger(__name__)

TOKEN_ENV_VARS = ("GITHUB_TOKEN", "GH_TOKEN")


@runtime_checkable
class CredentialProvider(Protocol):
    """Supplies bearer tokens to the GitHub client.

    ``on_auth_failure`` is called at most once per rejected request and must
    either return a different token or raise.
    """

    def get_token(self) -> str:
        ...

    def on_auth_failure(self) -> str:
        ...


def resolve_github_token(config_token: str | None = None) -> str | None:
    """Resolve a GitHub token from env or config."""
    for env_name in TOKEN_ENV_VARS:
        value = os.getenv(env_name, "").strip()
        if value:
            return value

    if config_token and config_token.strip():
        return config_token.strip()

    return None


class StaticTokenProvider:
    """A fixed token with no way to refresh it."""

    def __init__(self, token: str) -> None:
        if not token:
            raise ValueError("A GitHub token is required")
        self._token = token

    def get_token(self) -> str:
        return self._token

    def on_auth_failure(self) -> str:
        raise AuthExpiredError("GitHub rejected the configured token and it cannot be refreshed")


class EnvTokenProvider:
    """Re-reads env/config on refresh, so a token rotated mid-sync is picked up."""

    def __init__(self, config_token: str | None = None) -> None:
        self._config_token = config_token
        self._token = resolve_github_token(config_token)

    def get_token(self) -> str:
        if not self._token:
            raise AuthExpiredError(
                "No GitHub token found. Set `GITHUB_TOKEN` or update `.snapsync.json`."
            )
        return self._token

    def on_auth_failure(self) -> str:
        refreshed = resolve_github_token(self._config_token)
        if not refreshed or refreshed == self._token:
            raise AuthExpiredError("GitHub rejected the token and no newer token is available")
        logger.info("GitHub token refreshed after authentication failure")
        self._token = refreshed
        return refreshed
