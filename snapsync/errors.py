"""
Error taxonomy for the sync engine.

Errors are decided once, at the HTTP boundary, from the response status
code. Stages branch on the exception type, never on message text.
"""

from __future__ import annotations


class SnapSyncError(Exception):
    """Base class for every error raised by snapsync."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(SnapSyncError):
    """Repository, ref or object is missing (404)."""

    def __init__(self, resource: str = "Resource") -> None:
        super().__init__(f"{resource} not found", status_code=404)
        self.resource = resource


class RateLimitedError(SnapSyncError):
    """API quota is exhausted.

    ``reset_at`` (epoch seconds) is the primary window reset and is only set
    when that window is used up. ``retry_after`` (seconds) comes from a
    secondary limit and takes precedence.
    """

    def __init__(
        self,
        message: str,
        reset_at: float | None = None,
        status_code: int | None = 403,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.reset_at = reset_at
        self.retry_after = retry_after


class TransientError(SnapSyncError):
    """Network failure or 5xx response; safe to retry."""


class AuthExpiredError(SnapSyncError):
    """Token was rejected and a refresh did not help."""

    def __init__(self, message: str = "GitHub token was rejected") -> None:
        super().__init__(message, status_code=401)


class ConflictError(SnapSyncError):
    """Branch ref moved or the remote state contradicts the plan."""


class ValidationError(SnapSyncError):
    """Malformed request or input."""


class GitHubApiError(SnapSyncError):
    """Any other unexpected API response. Not retried."""


class SyncCancelled(SnapSyncError):
    """The caller asked the running sync to stop.

    ``uploaded_paths`` lists blobs already created when the upload stage was
    interrupted.
    """

    def __init__(self, message: str = "Sync cancelled", uploaded_paths: list[str] | None = None) -> None:
        super().__init__(message)
        self.uploaded_paths = uploaded_paths or []


class BlobUploadError(SnapSyncError):
    """One or more blobs could not be created after exhausting retries."""

    def __init__(self, failed_paths: list[str], succeeded_paths: list[str], tasks=None) -> None:
        preview = ", ".join(failed_paths[:5])
        if len(failed_paths) > 5:
            preview += f", ... (+{len(failed_paths) - 5} more)"
        super().__init__(f"Failed to upload {len(failed_paths)} blob(s): {preview}")
        self.failed_paths = failed_paths
        self.succeeded_paths = succeeded_paths
        self.tasks = tasks or []
