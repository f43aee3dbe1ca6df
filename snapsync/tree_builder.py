from __future__ import annotations

import logging
import threading

from snapsync.github_client import GitHubClient
from snapsync.models import ChangeStatus, FileChange, GitTreeEntry, TreeMode
from snapsync.retry import RetryPolicy


logger = logging.getLogger(__name__)


def upsert_mode(change: FileChange, existing: GitTreeEntry | None = None) -> TreeMode:
    """Mode for a created or rewritten file: the executable bit survives, anything else becomes a regular file."""
    if change.mode is TreeMode.EXECUTABLE or (existing is not None and existing.mode is TreeMode.EXECUTABLE):
        return TreeMode.EXECUTABLE
    return TreeMode.BLOB


def tree_modes(changes: list[FileChange]) -> dict[str, str]:
    """``{path: mode}`` of every file left in the tree once ``changes`` are applied."""
    modes: dict[str, str] = {}
    for change in changes:
        if change.status is ChangeStatus.DELETED:
            continue
        mode = upsert_mode(change) if change.needs_upload else (change.mode or TreeMode.BLOB)
        modes[change.path] = mode.value
    return modes


def merge_tree_entries(base_entries: list[GitTreeEntry], changes: list[FileChange]) -> list[GitTreeEntry]:
    """Apply ``changes`` on top of a flat (recursive) base listing.

    Entries no change touches are carried over as they are, same sha and
    mode. Directory entries are dropped; GitHub rebuilds subtrees from the
    slash-separated paths.
    """
    merged: dict[str, GitTreeEntry] = {
        entry.path: entry for entry in base_entries if entry.mode is not TreeMode.TREE
    }

    for change in changes:
        if change.status is ChangeStatus.DELETED:
            merged.pop(change.path, None)
        elif change.needs_upload:
            if not change.blob_sha:
                raise ValueError(f"No blob sha for {change.path}; blobs must be uploaded before building the tree")
            mode = upsert_mode(change, merged.get(change.path))
            merged[change.path] = GitTreeEntry(path=change.path, mode=mode, sha=change.blob_sha)

    return [merged[path] for path in sorted(merged)]


def delta_tree_items(changes: list[FileChange]) -> list[dict[str, str | None]]:
    """Tree items for a ``base_tree`` update: upserts plus ``sha: None`` deletions."""
    items: list[dict[str, str | None]] = []
    for change in sorted(changes, key=lambda item: item.path):
        if change.status is ChangeStatus.DELETED:
            mode = change.mode or TreeMode.BLOB
            items.append({"path": change.path, "mode": mode.value, "type": mode.object_type, "sha": None})
        elif change.needs_upload:
            if not change.blob_sha:
                raise ValueError(f"No blob sha for {change.path}; blobs must be uploaded before building the tree")
            items.append(
                {"path": change.path, "mode": upsert_mode(change).value, "type": "blob", "sha": change.blob_sha}
            )
    return items


class TreeBuilder:
    def __init__(self, client: GitHubClient, retry_policy: RetryPolicy) -> None:
        self.client = client
        self.retry = retry_policy

    def build(
        self,
        owner: str,
        repo: str,
        base_tree_sha: str | None,
        changes: list[FileChange],
        *,
        base_entries: list[GitTreeEntry] | None = None,
        truncated: bool = False,
        delta: bool = False,
        cancel: threading.Event | None = None,
    ) -> str:
        """Create the new tree object and return its sha.

        With ``delta`` (or when the base listing is truncated) only the changed
        paths are sent and GitHub merges them onto ``base_tree_sha``.
        """
        if base_tree_sha is None:
            base_entries = []
        elif base_entries is None and not delta:
            base_entries, truncated = self.retry.call(
                lambda: self.client.get_tree(owner, repo, base_tree_sha, recursive=True, cancel=cancel),
                operation=f"get tree {base_tree_sha[:7]}",
                cancel=cancel,
            )

        if base_tree_sha is not None and (delta or truncated):
            if truncated:
                logger.warning("Base tree %s is too large to list; sending a delta on top of it", base_tree_sha)
            items = delta_tree_items(changes)
            return self.retry.call(
                lambda: self.client.create_tree(owner, repo, items, base_tree=base_tree_sha),
                operation="create tree",
                cancel=cancel,
            )

        entries = merge_tree_entries(base_entries, changes)
        payload = [entry.to_api() for entry in entries]
        tree_sha = self.retry.call(
            lambda: self.client.create_tree(owner, repo, payload),
            operation="create tree",
            cancel=cancel,
        )
        logger.info("Created tree %s with %d entries", tree_sha, len(entries))
        return tree_sha
