from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskID, TaskProgressColumn, TextColumn

from snapsync.models import ProgressEvent, SyncStage


logger = logging.getLogger(__name__)

STAGE_LABELS = {
    SyncStage.IDLE: "idle",
    SyncStage.BOOTSTRAPPING: "bootstrap",
    SyncStage.DETECTING: "compare",
    SyncStage.UPLOADING: "upload",
    SyncStage.BUILDING_TREE: "tree",
    SyncStage.COMMITTING: "commit",
    SyncStage.CONFLICT_RETRY: "retry",
    SyncStage.DONE: "done",
    SyncStage.FAILED: "failed",
}


@runtime_checkable
class ProgressSink(Protocol):
    """Receives ordered status events from a running sync."""

    def emit(self, event: ProgressEvent) -> None:
        ...


class ProgressEmitter:
    """Forwards events to a sink; a failing sink never aborts the sync."""

    def __init__(self, sink: ProgressSink | None) -> None:
        self._sink = sink
        self._lock = threading.Lock()
        self._last_percent = 0

    def emit(self, stage: SyncStage, message: str, percent: int) -> None:
        if self._sink is None:
            return
        with self._lock:
            # Percent never goes backwards within one sync.
            percent = max(self._last_percent, min(100, int(percent)))
            self._last_percent = percent
            event = ProgressEvent(stage=stage, message=message, percent=percent)
            try:
                self._sink.emit(event)
            except Exception:
                logger.warning("Progress sink raised while handling %s; ignoring", event, exc_info=True)


class LoggingProgressSink:
    def emit(self, event: ProgressEvent) -> None:
        logger.info("[%3d%%] %s: %s", event.percent, event.stage.value, event.message)


class RichProgressSink:
    """Renders sync progress as a single Rich progress bar."""

    def __init__(self, console: Console | None = None, *, transient: bool = False) -> None:
        self._console = console
        self._lock = threading.Lock()
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.fields[stage]}"),
            BarColumn(),
            TaskProgressColumn(),
            TextColumn("{task.fields[message]}"),
            console=console,
            transient=transient,
            expand=True,
        )
        self._task_id: TaskID | None = None

    def __enter__(self) -> "RichProgressSink":
        self._progress.__enter__()
        self._task_id = self._progress.add_task("sync", total=100, stage="start", message="")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._progress.__exit__(exc_type, exc, tb)

    def emit(self, event: ProgressEvent) -> None:
        with self._lock:
            if self._task_id is None:
                return
            self._progress.update(
                self._task_id,
                completed=event.percent,
                stage=STAGE_LABELS.get(event.stage, event.stage.value),
                message=event.message,
            )
