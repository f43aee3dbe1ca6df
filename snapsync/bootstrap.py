from __future__ import annotations

import logging
import random
import string
import time
from collections.abc import Callable

from snapsync.errors import ConflictError, NotFoundError, SnapSyncError
from snapsync.github_client import GitHubClient


logger = logging.getLogger(__name__)

DEFAULT_PROPAGATION_DELAY = 2.0
PROPAGATION_CHECKS = 5
PLACEHOLDER_PATH = "README.md"
TEMP_PLACEHOLDER_PATH = ".gitkeep"
REPO_DESCRIPTION = "Repository created by snapsync"
TEMP_REPO_DESCRIPTION = "Temporary repository for snapsync staging - safe to delete"


def placeholder_readme(repo: str) -> bytes:
    return (
        f"# {repo}\n"
        "\n"
        "Feel free to delete this file and replace it with your own content.\n"
        "\n"
        "This repository was initialized by snapsync so that the branch exists\n"
        "before the first snapshot is pushed.\n"
    ).encode("utf-8")


def temporary_repo_name(source_repo: str, *, now_ms: int | None = None) -> str:
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"temp-{source_repo}-{timestamp}-{suffix}"


class RepositoryBootstrapper:
    """Puts the destination repository into a known state before a sync."""

    def __init__(
        self,
        client: GitHubClient,
        *,
        propagation_delay: float = DEFAULT_PROPAGATION_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.propagation_delay = propagation_delay
        self._sleep = sleep

    def exists(self, owner: str, repo: str) -> bool:
        try:
            self.client.get_repo(owner, repo)
        except NotFoundError:
            return False
        return True

    def is_organization(self, owner: str) -> bool:
        try:
            info = self.client.get_owner(owner)
        except SnapSyncError as exc:
            logger.warning("Could not determine whether %s is an organization: %s", owner, exc)
            return False
        return info.get("type") == "Organization"

    def create(self, owner: str, repo: str, *, description: str = REPO_DESCRIPTION) -> None:
        org = owner if self.is_organization(owner) else None
        logger.info("Creating private repository %s/%s%s", owner, repo, " (organization)" if org else "")
        self.client.create_repo(repo, org=org, private=True, auto_init=False, description=description)

    def ensure_exists(self, owner: str, repo: str) -> bool:
        """Create ``owner/repo`` when missing. Returns True if it was created."""
        if self.exists(owner, repo):
            return False

        self.create(owner, repo)
        self._wait_for_propagation(owner, repo)
        return True

    def _wait_for_propagation(self, owner: str, repo: str) -> None:
        # Repository creation is eventually consistent on GitHub's side.
        for _ in range(PROPAGATION_CHECKS):
            self._sleep(self.propagation_delay)
            if self.exists(owner, repo):
                return
        logger.warning("%s/%s is still not visible after creation; continuing anyway", owner, repo)

    def is_empty(self, owner: str, repo: str) -> bool:
        try:
            commits = self.client.list_commits(owner, repo, per_page=1)
        except ConflictError:
            # GitHub answers 409 for repositories without commits.
            return True
        return len(commits) == 0

    def initialize_empty(self, owner: str, repo: str, branch: str) -> str:
        """Write a placeholder README so ``branch`` exists. Returns its commit sha."""
        logger.info("Initializing empty repository %s/%s on %s", owner, repo, branch)
        return self.client.put_contents(
            owner,
            repo,
            PLACEHOLDER_PATH,
            placeholder_readme(repo),
            branch=branch,
            message="Initialize repository",
        )

    def create_temporary_repo(self, owner: str, source_repo: str, branch: str = "main") -> str:
        """Create a disposable private repo seeded with one file on ``branch``.

        The caller owns the returned repository and must delete it.
        """
        name = temporary_repo_name(source_repo)
        self.create(owner, name, description=TEMP_REPO_DESCRIPTION)
        self._wait_for_propagation(owner, name)
        self.client.put_contents(
            owner,
            name,
            TEMP_PLACEHOLDER_PATH,
            b"",
            branch=branch,
            message=f"Initialize repository with branch '{branch}'",
        )
        return name

    def delete_repo(self, owner: str, repo: str) -> None:
        logger.info("Deleting repository %s/%s", owner, repo)
        self.client.delete_repo(owner, repo)
