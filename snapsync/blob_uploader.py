from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from snapsync.errors import BlobUploadError, SnapSyncError, SyncCancelled
from snapsync.github_client import GitHubClient
from snapsync.models import BlobState, BlobTask, FileChange
from snapsync.retry import RetryPolicy


logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 6


@dataclass(slots=True)
class BlobUploadReport:
    tasks: list[BlobTask]
    max_in_flight: int = 0
    attempts: dict[str, int] = field(default_factory=dict)

    @property
    def uploaded_paths(self) -> list[str]:
        return sorted(task.path for task in self.tasks if task.state is BlobState.DONE)

    @property
    def failed_paths(self) -> list[str]:
        return sorted(task.path for task in self.tasks if task.state is BlobState.FAILED)


class BlobUploader:
    """Creates a blob for every Added/Modified change with bounded parallelism.

    Work proceeds in windows of ``max_concurrency`` tasks; each window is
    drained before the next one starts so cancellation is observed between
    windows. One failed task never aborts its siblings.
    """

    def __init__(
        self,
        client: GitHubClient,
        retry_policy: RetryPolicy,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self.client = client
        self.retry = retry_policy
        self.max_concurrency = max(1, max_concurrency)
        self._lock = threading.Lock()
        self._in_flight = 0
        self._peak = 0

    def _enter(self) -> None:
        with self._lock:
            self._in_flight += 1
            self._peak = max(self._peak, self._in_flight)

    def _leave(self) -> None:
        with self._lock:
            self._in_flight -= 1

    def _upload_one(self, owner: str, repo: str, task: BlobTask, cancel: threading.Event | None) -> None:
        def _call() -> str:
            task.start()
            self._enter()
            try:
                return self.client.create_blob(owner, repo, task.content, cancel=cancel)
            finally:
                self._leave()

        try:
            sha = self.retry.call(
                _call,
                operation=f"create blob {task.path}",
                on_retry=lambda attempt, exc: task.retry(),
                cancel=cancel,
            )
        except SyncCancelled:
            task.fail("cancelled")
            raise
        except SnapSyncError as exc:
            logger.error("Giving up on blob for %s after %d attempt(s): %s", task.path, task.attempts, exc)
            task.fail(exc.message)
            return
        task.finish(sha)

    def upload(
        self,
        owner: str,
        repo: str,
        changes: list[FileChange],
        *,
        cancel: threading.Event | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> BlobUploadReport:
        pending = [change for change in changes if change.needs_upload]
        tasks = [BlobTask(path=change.path, content=change.content or b"") for change in pending]
        report = BlobUploadReport(tasks=tasks)
        if not tasks:
            return report

        with self._lock:
            self._peak = 0
        total = len(tasks)
        completed = 0
        cancelled = False

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="snapsync-blob") as executor:
            for start in range(0, total, self.max_concurrency):
                if cancel is not None and cancel.is_set():
                    cancelled = True
                    break
                window = tasks[start : start + self.max_concurrency]
                futures: dict[Future[None], BlobTask] = {
                    executor.submit(self._upload_one, owner, repo, task, cancel): task for task in window
                }
                for future in as_completed(futures):
                    try:
                        future.result()
                    except SyncCancelled:
                        cancelled = True
                    completed += 1
                    if on_progress is not None:
                        on_progress(completed, total)
                if cancelled:
                    break

        report.max_in_flight = self._peak
        report.attempts = {task.path: task.attempts for task in tasks}

        if cancelled:
            raise SyncCancelled("Sync cancelled during blob upload", uploaded_paths=report.uploaded_paths)

        by_path = {task.path: task for task in tasks}
        for change in pending:
            task = by_path[change.path]
            if task.state is BlobState.DONE:
                change.blob_sha = task.sha

        failed = report.failed_paths
        if failed:
            raise BlobUploadError(failed, report.uploaded_paths, tasks)
        logger.info("Created %d blob(s) in %s/%s", total, owner, repo)
        return report
