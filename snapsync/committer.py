from __future__ import annotations

import logging
import threading

from snapsync.errors import ConflictError, NotFoundError
from snapsync.github_client import GitHubClient
from snapsync.models import CommitPlan
from snapsync.retry import RetryPolicy


logger = logging.getLogger(__name__)

DEFAULT_COMMIT_MESSAGE = "Sync snapshot via snapsync"


class CommitCommitter:
    """Creates the commit object and moves the branch ref onto it.

    The ref update is conditioned on ``plan.expected_ref_sha``: the ref is
    re-read first and GitHub is asked for a fast-forward only, so a branch
    that moved since the plan was captured raises ``ConflictError``.
    """

    def __init__(self, client: GitHubClient, retry_policy: RetryPolicy) -> None:
        self.client = client
        self.retry = retry_policy

    def create_commit(self, owner: str, repo: str, plan: CommitPlan) -> str:
        if not plan.new_tree_sha:
            raise ValueError("CommitPlan has no tree; build the tree before committing")
        parents = [plan.parent_commit_sha] if plan.parent_commit_sha else []
        message = plan.message or DEFAULT_COMMIT_MESSAGE
        return self.retry.call(
            lambda: self.client.create_commit(owner, repo, message=message, tree=plan.new_tree_sha, parents=parents),
            operation="create commit",
        )

    def update_ref(
        self,
        owner: str,
        repo: str,
        branch: str,
        plan: CommitPlan,
        commit_sha: str,
        cancel: threading.Event | None = None,
    ) -> None:
        if plan.expected_ref_sha is None:
            logger.info("Creating branch %s at %s", branch, commit_sha)
            self.client.create_ref(owner, repo, branch, commit_sha)
            return

        try:
            current = self.retry.call(
                lambda: self.client.get_ref(owner, repo, branch, cancel=cancel),
                operation=f"get ref {branch}",
                cancel=cancel,
            )
        except NotFoundError as exc:
            raise ConflictError(f"Branch {branch} was deleted while syncing") from exc
        if current != plan.expected_ref_sha:
            raise ConflictError(
                f"Branch {branch} moved from {plan.expected_ref_sha[:7]} to {current[:7]} while syncing"
            )

        # A root commit replacing the bootstrap placeholder is the only non
        # fast-forward update, and it is still guarded by the re-read above.
        force = plan.parent_commit_sha is None
        self.retry.call(
            lambda: self.client.update_ref(owner, repo, branch, commit_sha, force=force),
            operation=f"update ref {branch}",
            cancel=cancel,
        )

    def commit(
        self,
        owner: str,
        repo: str,
        branch: str,
        plan: CommitPlan,
        cancel: threading.Event | None = None,
    ) -> str:
        commit_sha = self.create_commit(owner, repo, plan)
        self.update_ref(owner, repo, branch, plan, commit_sha, cancel)
        logger.info("Updated %s/%s@%s to %s", owner, repo, branch, commit_sha)
        return commit_sha
