from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field

from snapsync.errors import ConflictError, NotFoundError, SnapSyncError
from snapsync.filters import DEFAULT_IGNORE_PATTERNS, GITIGNORE_PATH, PathFilter, parse_gitignore
from snapsync.github_client import GitHubClient
from snapsync.models import ChangeStatus, FileChange, FileSnapshot, GitTreeEntry, TreeMode
from snapsync.retry import RetryPolicy


logger = logging.getLogger(__name__)

PROJECT_PREFIX = "project/"

SOURCE_REMOTE = "remote"
SOURCE_CACHE = "cache"
SOURCE_NEW = "new"
SOURCE_EMPTY = "empty"


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/").lstrip("/")
    if normalized.startswith(PROJECT_PREFIX):
        normalized = normalized[len(PROJECT_PREFIX):]
    return normalized


def is_directory_entry(path: str, content: bytes, all_paths: set[str]) -> bool:
    """Directory markers: a trailing separator, or an empty entry that other paths live under."""
    if path.endswith("/"):
        return True
    if content:
        return False
    prefix = path + "/"
    return any(other.startswith(prefix) for other in all_paths)


def normalize_snapshot(
    snapshot: FileSnapshot,
    path_filter: PathFilter | None = None,
    *,
    apply_ignore: bool = True,
) -> FileSnapshot:
    """Drop directory entries, strip the ``project/`` prefix and apply ignore rules.

    The snapshot's own ``.gitignore`` is honoured; without one the
    ``DEFAULT_IGNORE_PATTERNS`` apply.
    """
    path_filter = path_filter or PathFilter()
    raw_paths = {normalize_path(path) for path in snapshot}

    normalized: FileSnapshot = {}
    for path, entry in snapshot.items():
        norm = normalize_path(path)
        if not norm or is_directory_entry(norm, entry.content, raw_paths):
            continue
        normalized[norm] = entry

    if not apply_ignore:
        return {path: entry for path, entry in normalized.items() if path_filter.matches(path)}

    active_filter = build_ignore_filter(normalized, path_filter)
    return {path: entry for path, entry in normalized.items() if active_filter.matches(path)}


def build_ignore_filter(snapshot: FileSnapshot, path_filter: PathFilter | None = None) -> PathFilter:
    path_filter = path_filter or PathFilter()
    gitignore = snapshot.get(GITIGNORE_PATH)
    if gitignore is not None:
        patterns = parse_gitignore(gitignore.content.decode("utf-8", errors="replace"))
    else:
        patterns = DEFAULT_IGNORE_PATTERNS
    return path_filter.with_ignore_patterns(patterns)


def _known_mode(value: str | None) -> TreeMode | None:
    if value is None:
        return None
    try:
        return TreeMode(value)
    except ValueError:
        return None


def classify_changes(
    snapshot: FileSnapshot,
    previous: Mapping[str, str],
    modes: Mapping[str, str] | None = None,
) -> list[FileChange]:
    """Partition the union of ``snapshot`` and ``previous`` paths by status.

    ``previous`` maps path to the git blob sha of the earlier content and
    ``modes`` to its tree mode, where known.
    """
    modes = modes or {}
    changes: list[FileChange] = []

    for path, entry in snapshot.items():
        old_sha = previous.get(path)
        if old_sha is None:
            status = ChangeStatus.ADDED
        elif old_sha != entry.content_hash:
            status = ChangeStatus.MODIFIED
        else:
            status = ChangeStatus.UNCHANGED
        changes.append(
            FileChange(
                path=path,
                status=status,
                content=entry.content,
                blob_sha=entry.content_hash if status is ChangeStatus.UNCHANGED else None,
                previous_sha=old_sha,
                mode=_known_mode(modes.get(path)) if old_sha is not None else None,
            )
        )

    for path, old_sha in previous.items():
        if path not in snapshot:
            changes.append(
                FileChange(
                    path=path,
                    status=ChangeStatus.DELETED,
                    previous_sha=old_sha,
                    mode=_known_mode(modes.get(path)),
                )
            )

    changes.sort(key=lambda change: change.path)
    return changes


def count_changes(changes: list[FileChange]) -> dict[ChangeStatus, int]:
    counts = {status: 0 for status in ChangeStatus}
    for change in changes:
        counts[change.status] += 1
    return counts


def has_changes(changes: list[FileChange]) -> bool:
    return any(change.status is not ChangeStatus.UNCHANGED for change in changes)


@dataclass(slots=True)
class RemoteHead:
    commit_sha: str
    tree_sha: str


@dataclass(slots=True)
class DetectionResult:
    changes: list[FileChange]
    source: str
    head: RemoteHead | None = None
    expected_ref_sha: str | None = None
    remote_entries: list[GitTreeEntry] | None = None
    truncated: bool = False
    warning: str | None = None
    counts: dict[ChangeStatus, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.counts:
            self.counts = count_changes(self.changes)

    @property
    def has_changes(self) -> bool:
        return has_changes(self.changes)


class ChangeDetector:
    """Classifies a snapshot against the cached or remote state of a branch."""

    def __init__(self, client: GitHubClient, retry_policy: RetryPolicy) -> None:
        self.client = client
        self.retry = retry_policy

    def read_head(self, owner: str, repo: str, branch: str, cancel: threading.Event | None = None) -> RemoteHead:
        commit_sha = self.retry.call(
            lambda: self.client.get_ref(owner, repo, branch, cancel=cancel),
            operation=f"get ref {branch}",
            cancel=cancel,
        )
        commit = self.retry.call(
            lambda: self.client.get_commit(owner, repo, commit_sha, cancel=cancel),
            operation=f"get commit {commit_sha[:7]}",
            cancel=cancel,
        )
        return RemoteHead(commit_sha=commit_sha, tree_sha=str(commit["tree"]["sha"]))

    def read_tree(
        self, owner: str, repo: str, tree_sha: str, cancel: threading.Event | None = None
    ) -> tuple[list[GitTreeEntry], bool]:
        return self.retry.call(
            lambda: self.client.get_tree(owner, repo, tree_sha, recursive=True, cancel=cancel),
            operation=f"get tree {tree_sha[:7]}",
            cancel=cancel,
        )

    def detect(
        self,
        owner: str,
        repo: str,
        branch: str,
        snapshot: FileSnapshot,
        *,
        previous: Mapping[str, str] | None = None,
        fallback: Mapping[str, str] | None = None,
        modes: Mapping[str, str] | None = None,
        placeholder_head: str | None = None,
        path_filter: PathFilter | None = None,
        cancel: threading.Event | None = None,
    ) -> DetectionResult:
        """Classify ``snapshot`` against the target branch.

        ``previous`` (a cached ``{path: sha}`` map) is authoritative when
        given. Otherwise the remote tree is listed; ``fallback`` is only used
        when that listing fails with something other than a 404. ``modes``
        holds the cached tree mode of each path for either of them.
        ``placeholder_head`` marks a freshly bootstrapped repository whose
        only commit is the placeholder: everything is Added onto an empty tree.
        """
        if placeholder_head is not None:
            return DetectionResult(
                changes=classify_changes(snapshot, {}),
                source=SOURCE_EMPTY,
                expected_ref_sha=placeholder_head,
                remote_entries=[],
            )

        try:
            head = self.read_head(owner, repo, branch, cancel)
        except (NotFoundError, ConflictError):
            # 409 here is GitHub's answer for a repository without commits.
            logger.info("%s/%s has no branch %s yet; every path is new", owner, repo, branch)
            return DetectionResult(changes=classify_changes(snapshot, {}), source=SOURCE_NEW, remote_entries=[])

        if previous is not None:
            return DetectionResult(
                changes=classify_changes(snapshot, previous, modes),
                source=SOURCE_CACHE,
                head=head,
                expected_ref_sha=head.commit_sha,
            )

        try:
            entries, truncated = self.read_tree(owner, repo, head.tree_sha, cancel)
        except NotFoundError:
            logger.info("Tree %s of %s/%s not found; every path is new", head.tree_sha, owner, repo)
            return DetectionResult(
                changes=classify_changes(snapshot, {}),
                source=SOURCE_NEW,
                head=head,
                expected_ref_sha=head.commit_sha,
                remote_entries=[],
            )
        except SnapSyncError as exc:
            if fallback is None:
                raise
            warning = f"Could not read the remote tree ({exc.message}); compared against the local cache instead"
            logger.warning(warning)
            return DetectionResult(
                changes=classify_changes(snapshot, fallback, modes),
                source=SOURCE_CACHE,
                head=head,
                expected_ref_sha=head.commit_sha,
                warning=warning,
            )

        ignore_filter = build_ignore_filter(snapshot, path_filter)
        remote_blobs = [
            entry
            for entry in entries
            if entry.type == "blob" and (entry.path in snapshot or ignore_filter.matches(entry.path))
        ]
        return DetectionResult(
            changes=classify_changes(
                snapshot,
                {entry.path: entry.sha for entry in remote_blobs},
                {entry.path: entry.mode.value for entry in remote_blobs},
            ),
            source=SOURCE_REMOTE,
            head=head,
            expected_ref_sha=head.commit_sha,
            remote_entries=entries,
            truncated=truncated,
        )
