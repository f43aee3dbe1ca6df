from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


@dataclass(slots=True, frozen=True)
class FileEntry:
    content: bytes
    content_hash: str

    @property
    def size(self) -> int:
        return len(self.content)


FileSnapshot = dict[str, FileEntry]


class ChangeStatus(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


@dataclass(slots=True)
class FileChange:
    path: str
    status: ChangeStatus
    content: bytes | None = None
    blob_sha: str | None = None
    previous_sha: str | None = None
    # Mode the path has on the branch today, when known.
    mode: TreeMode | None = None

    @property
    def needs_upload(self) -> bool:
        return self.status in (ChangeStatus.ADDED, ChangeStatus.MODIFIED)


class TreeMode(str, Enum):
    BLOB = "100644"
    EXECUTABLE = "100755"
    SYMLINK = "120000"
    TREE = "040000"
    COMMIT = "160000"

    @property
    def object_type(self) -> str:
        if self is TreeMode.TREE:
            return "tree"
        if self is TreeMode.COMMIT:
            return "commit"
        return "blob"


@dataclass(slots=True, frozen=True)
class GitTreeEntry:
    path: str
    mode: TreeMode
    sha: str

    @property
    def type(self) -> str:
        return self.mode.object_type

    def to_api(self) -> dict[str, str]:
        return {"path": self.path, "mode": self.mode.value, "type": self.type, "sha": self.sha}


class BlobState(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class BlobTask:
    """One blob creation call, owned by the uploader for a single sync.

    State only moves forward; the one permitted step back is
    Uploading -> Pending when an attempt is retried.
    """

    path: str
    content: bytes
    state: BlobState = BlobState.PENDING
    attempts: int = 0
    sha: str | None = None
    error: str | None = None

    @property
    def terminal(self) -> bool:
        return self.state in (BlobState.DONE, BlobState.FAILED)

    def start(self) -> None:
        self._require(BlobState.PENDING)
        self.state = BlobState.UPLOADING
        self.attempts += 1

    def retry(self) -> None:
        self._require(BlobState.UPLOADING)
        self.state = BlobState.PENDING

    def finish(self, sha: str) -> None:
        self._require(BlobState.UPLOADING)
        self.state = BlobState.DONE
        self.sha = sha

    def fail(self, error: str) -> None:
        if self.terminal:
            raise ValueError(f"blob task for {self.path} is already {self.state.value}")
        self.state = BlobState.FAILED
        self.error = error

    def _require(self, expected: BlobState) -> None:
        if self.state is not expected:
            raise ValueError(
                f"blob task for {self.path}: expected {expected.value}, found {self.state.value}"
            )


@dataclass(slots=True)
class CommitPlan:
    base_tree_sha: str | None
    parent_commit_sha: str | None
    expected_ref_sha: str | None
    message: str
    new_tree_sha: str | None = None

    @property
    def is_root_commit(self) -> bool:
        return self.parent_commit_sha is None


@dataclass(slots=True)
class RateLimitState:
    remaining: int | None = None
    limit: int | None = None
    reset_at: float = 0.0


class SyncStage(str, Enum):
    IDLE = "idle"
    BOOTSTRAPPING = "bootstrapping"
    DETECTING = "detecting"
    UPLOADING = "uploading"
    BUILDING_TREE = "building_tree"
    COMMITTING = "committing"
    CONFLICT_RETRY = "conflict_retry"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    stage: SyncStage
    message: str
    percent: int


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    NO_CHANGES = "no_changes"
    CONFLICT = "conflict"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class SyncResult:
    outcome: SyncOutcome
    counts: dict[ChangeStatus, int] = field(default_factory=dict)
    commit_sha: str | None = None
    tree_sha: str | None = None
    attempts: int = 0
    failed_stage: SyncStage | None = None
    uploaded_paths: list[str] = field(default_factory=list)
    failed_paths: list[str] = field(default_factory=list)
    changes: list[FileChange] = field(default_factory=list)
    warning: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (SyncOutcome.SUCCESS, SyncOutcome.NO_CHANGES)

    def paths_with_status(self, status: ChangeStatus) -> list[str]:
        return sorted(change.path for change in self.changes if change.status is status)
