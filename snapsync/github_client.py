"""
GitHub REST v3 client.

This is the HTTP boundary of the engine: every response status is turned
into a typed error here, the shared rate limiter is consulted before each
request and refreshed from each response, and a rejected token gets exactly
one refresh-and-retry.
"""

from __future__ import annotations

import base64
import logging
import threading
from typing import Any
from urllib.parse import quote

import httpx

from snapsync.auth import CredentialProvider
from snapsync.config import DEFAULT_API_URL
from snapsync.errors import (
    AuthExpiredError,
    ConflictError,
    GitHubApiError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from snapsync.models import GitTreeEntry, TreeMode
from snapsync.rate_limit import RateLimiter


logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
DEFAULT_TIMEOUT_SECONDS = 30.0


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("message") or payload.get("error") or "Unknown GitHub API error")
    return "Unknown GitHub API error"


def _is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    return response.headers.get("x-ratelimit-remaining") == "0" or "retry-after" in response.headers


def _header_float(response: httpx.Response, name: str) -> float | None:
    value = response.headers.get(name)
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def _rate_limited_error(response: httpx.Response, message: str) -> RateLimitedError:
    # Secondary limits send Retry-After alongside an unrelated primary reset.
    retry_after = _header_float(response, "retry-after")
    reset_at = None
    if response.headers.get("x-ratelimit-remaining") == "0":
        reset_at = _header_float(response, "x-ratelimit-reset")
    return RateLimitedError(
        message, reset_at=reset_at, status_code=response.status_code, retry_after=retry_after
    )


def raise_for_status(response: httpx.Response, method: str, path: str) -> None:
    status = response.status_code
    if status < 400:
        return

    message = f"GitHub API Error ({status}) on {method} {path}: {_error_message(response)}"
    if status == 404:
        raise NotFoundError(f"{method} {path}")
    if status == 401:
        raise AuthExpiredError(message)
    if _is_rate_limited(response):
        raise _rate_limited_error(response, message)
    if status == 409:
        raise ConflictError(message, status_code=status)
    if status in (400, 422):
        raise ValidationError(message, status_code=status)
    if status >= 500:
        raise TransientError(message, status_code=status)
    raise GitHubApiError(message, status_code=status)


class GitHubClient:
    def __init__(
        self,
        credentials: CredentialProvider,
        rate_limiter: RateLimiter,
        *,
        base_url: str = DEFAULT_API_URL,
        transport: httpx.BaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self._token: str | None = None
        self._token_lock = threading.Lock()
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            transport=transport,
            timeout=timeout,
            headers={
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": API_VERSION,
                "User-Agent": "snapsync",
            },
        )

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _current_token(self) -> str:
        with self._token_lock:
            if self._token is None:
                self._token = self.credentials.get_token()
            return self._token

    def _refresh_token(self, rejected: str) -> str:
        with self._token_lock:
            # Another worker may already have refreshed it.
            if self._token != rejected and self._token is not None:
                return self._token
            self._token = self.credentials.on_auth_failure()
            return self._token

    def _send(
        self,
        method: str,
        path: str,
        token: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        cancel: threading.Event | None = None,
    ) -> httpx.Response:
        self.rate_limiter.before_request(cancel)
        try:
            response = self._http.request(
                method,
                path,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as exc:
            raise TransientError(f"GitHub API request failed on {method} {path}: {exc}") from exc
        self.rate_limiter.update_from_headers(response.headers)
        return response

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        cancel: threading.Event | None = None,
    ) -> Any:
        token = self._current_token()
        response = self._send(method, path, token, json=json, params=params, cancel=cancel)
        if response.status_code == 401:
            logger.info("GitHub returned 401 for %s %s; refreshing token once", method, path)
            token = self._refresh_token(token)
            response = self._send(method, path, token, json=json, params=params, cancel=cancel)

        raise_for_status(response, method, path)
        logger.debug("%s %s -> %s", method, path, response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # -- repositories -------------------------------------------------------

    def get_repo(self, owner: str, repo: str) -> dict[str, Any]:
        return self.request("GET", f"/repos/{owner}/{repo}")

    def create_repo(
        self,
        name: str,
        *,
        org: str | None = None,
        private: bool = True,
        auto_init: bool = False,
        description: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": name, "private": private, "auto_init": auto_init}
        if description:
            payload["description"] = description
        path = f"/orgs/{org}/repos" if org else "/user/repos"
        return self.request("POST", path, json=payload)

    def delete_repo(self, owner: str, repo: str) -> None:
        self.request("DELETE", f"/repos/{owner}/{repo}")

    def get_owner(self, login: str) -> dict[str, Any]:
        return self.request("GET", f"/users/{login}")

    def list_commits(
        self, owner: str, repo: str, *, sha: str | None = None, per_page: int = 1
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"per_page": per_page}
        if sha:
            params["sha"] = sha
        return self.request("GET", f"/repos/{owner}/{repo}/commits", params=params) or []

    def put_contents(
        self,
        owner: str,
        repo: str,
        path: str,
        content: bytes,
        *,
        branch: str,
        message: str,
    ) -> str:
        payload = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": branch,
        }
        result = self.request("PUT", f"/repos/{owner}/{repo}/contents/{quote(path, safe='/')}", json=payload)
        return str(result["commit"]["sha"])

    # -- refs ---------------------------------------------------------------

    def get_ref(self, owner: str, repo: str, branch: str, *, cancel: threading.Event | None = None) -> str:
        result = self.request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{branch}", cancel=cancel)
        return str(result["object"]["sha"])

    def create_ref(self, owner: str, repo: str, branch: str, sha: str) -> str:
        try:
            result = self.request(
                "POST",
                f"/repos/{owner}/{repo}/git/refs",
                json={"ref": f"refs/heads/{branch}", "sha": sha},
            )
        except ValidationError as exc:
            raise ConflictError(f"Branch {branch} was created concurrently: {exc.message}", 422) from exc
        return str(result["object"]["sha"])

    def update_ref(self, owner: str, repo: str, branch: str, sha: str, *, force: bool = False) -> str:
        try:
            result = self.request(
                "PATCH",
                f"/repos/{owner}/{repo}/git/refs/heads/{branch}",
                json={"sha": sha, "force": force},
            )
        except ValidationError as exc:
            raise ConflictError(f"Branch {branch} is not a fast-forward of {sha}: {exc.message}", 422) from exc
        return str(result["object"]["sha"])

    # -- objects ------------------------------------------------------------

    def get_commit(self, owner: str, repo: str, sha: str, *, cancel: threading.Event | None = None) -> dict[str, Any]:
        return self.request("GET", f"/repos/{owner}/{repo}/git/commits/{sha}", cancel=cancel)

    def create_commit(self, owner: str, repo: str, *, message: str, tree: str, parents: list[str]) -> str:
        result = self.request(
            "POST",
            f"/repos/{owner}/{repo}/git/commits",
            json={"message": message, "tree": tree, "parents": parents},
        )
        return str(result["sha"])

    def get_tree(
        self,
        owner: str,
        repo: str,
        tree_sha: str,
        *,
        recursive: bool = True,
        cancel: threading.Event | None = None,
    ) -> tuple[list[GitTreeEntry], bool]:
        """Return the blob-like entries of a tree and whether GitHub truncated the listing."""
        params = {"recursive": "1"} if recursive else None
        result = self.request("GET", f"/repos/{owner}/{repo}/git/trees/{tree_sha}", params=params, cancel=cancel)
        entries: list[GitTreeEntry] = []
        for item in result.get("tree") or []:
            try:
                mode = TreeMode(str(item["mode"]).zfill(6))
            except ValueError:
                logger.warning("Skipping tree entry %s with unknown mode %s", item.get("path"), item.get("mode"))
                continue
            entries.append(GitTreeEntry(path=str(item["path"]), mode=mode, sha=str(item["sha"])))
        return entries, bool(result.get("truncated"))

    def create_tree(self, owner: str, repo: str, tree: list[dict[str, Any]], *, base_tree: str | None = None) -> str:
        payload: dict[str, Any] = {"tree": tree}
        if base_tree:
            payload["base_tree"] = base_tree
        result = self.request("POST", f"/repos/{owner}/{repo}/git/trees", json=payload)
        return str(result["sha"])

    def create_blob(self, owner: str, repo: str, content: bytes, *, cancel: threading.Event | None = None) -> str:
        result = self.request(
            "POST",
            f"/repos/{owner}/{repo}/git/blobs",
            json={"content": base64.b64encode(content).decode("ascii"), "encoding": "base64"},
            cancel=cancel,
        )
        return str(result["sha"])
