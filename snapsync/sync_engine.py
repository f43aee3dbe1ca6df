from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Mapping
from contextlib import nullcontext

import httpx
from rich.console import Console

from snapsync.auth import EnvTokenProvider, resolve_github_token
from snapsync.blob_uploader import BlobUploader
from snapsync.bootstrap import RepositoryBootstrapper
from snapsync.change_detector import (
    SOURCE_CACHE,
    ChangeDetector,
    DetectionResult,
    classify_changes,
    normalize_snapshot,
)
from snapsync.committer import DEFAULT_COMMIT_MESSAGE, CommitCommitter
from snapsync.config import EngineOptions, SnapSyncConfig
from snapsync.errors import BlobUploadError, ConflictError, SnapSyncError, SyncCancelled
from snapsync.filters import PathFilter
from snapsync.github_client import GitHubClient
from snapsync.models import ChangeStatus, CommitPlan, FileSnapshot, SyncOutcome, SyncResult, SyncStage
from snapsync.progress import ProgressEmitter, ProgressSink, RichProgressSink
from snapsync.rate_limit import RateLimiter
from snapsync.retry import RetryPolicy
from snapsync.scanner import SnapshotSource
from snapsync.state_db import (
    LAST_BRANCH_KEY,
    LAST_COMMIT_KEY,
    get_meta,
    load_hashes,
    load_modes,
    replace_snapshot,
    set_meta,
)
from snapsync.tree_builder import TreeBuilder, tree_modes


logger = logging.getLogger(__name__)

UPLOAD_START_PERCENT = 10
UPLOAD_END_PERCENT = 60


def default_commit_message(result: SyncResult) -> str:
    touched = sum(
        result.counts.get(status, 0)
        for status in (ChangeStatus.ADDED, ChangeStatus.MODIFIED, ChangeStatus.DELETED)
    )
    return f"{DEFAULT_COMMIT_MESSAGE}\n\nUpdated {touched} files"


class SyncOrchestrator:
    """Runs one snapshot sync against one branch.

    Stages: bootstrapping -> detecting -> uploading -> building_tree ->
    committing -> done. A ref conflict while committing loops back to
    detecting against the new head, at most ``max_conflict_retries`` times.
    Cancellation is checked between stages and between upload windows.
    """

    def __init__(
        self,
        client: GitHubClient,
        rate_limiter: RateLimiter,
        *,
        options: EngineOptions | None = None,
        progress: ProgressSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.options = options or EngineOptions()
        self.client = client
        self.rate_limiter = rate_limiter
        self.progress = progress
        self.retry = RetryPolicy(
            rate_limiter=rate_limiter,
            max_attempts=self.options.max_attempts,
            base_delay=self.options.base_delay,
            max_delay=self.options.max_delay,
            sleep=sleep,
        )
        self.bootstrapper = RepositoryBootstrapper(
            client, propagation_delay=self.options.propagation_delay, sleep=sleep
        )
        self.detector = ChangeDetector(client, self.retry)
        self.uploader = BlobUploader(client, self.retry, max_concurrency=self.options.max_concurrency)
        self.tree_builder = TreeBuilder(client, self.retry)
        self.committer = CommitCommitter(client, self.retry)
        self.stage = SyncStage.IDLE
        self.transitions: list[SyncStage] = []

    def _enter(self, stage: SyncStage) -> None:
        logger.debug("sync stage %s -> %s", self.stage.value, stage.value)
        self.stage = stage
        self.transitions.append(stage)

    @staticmethod
    def _check_cancel(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise SyncCancelled()

    def _bootstrap(self, owner: str, repo: str, branch: str) -> str | None:
        """Make sure the repository exists; return the placeholder commit of a fresh one."""
        created = self.bootstrapper.ensure_exists(owner, repo)
        if created or self.bootstrapper.is_empty(owner, repo):
            return self.bootstrapper.initialize_empty(owner, repo, branch)
        return None

    def run(
        self,
        owner: str,
        repo: str,
        branch: str,
        snapshot: FileSnapshot,
        *,
        previous: Mapping[str, str] | None = None,
        fallback: Mapping[str, str] | None = None,
        modes: Mapping[str, str] | None = None,
        message: str | None = None,
        path_filter: PathFilter | None = None,
        normalize: bool = True,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        cancel = cancel or threading.Event()
        emitter = ProgressEmitter(self.progress)
        result = SyncResult(outcome=SyncOutcome.ERROR, counts={status: 0 for status in ChangeStatus})
        self.transitions = []
        self.stage = SyncStage.IDLE

        if normalize:
            snapshot = normalize_snapshot(snapshot, path_filter)

        if not snapshot:
            result.outcome = SyncOutcome.NO_CHANGES
            result.warning = "Snapshot is empty; nothing was pushed"
            emitter.emit(SyncStage.DONE, result.warning, 100)
            return result

        try:
            self._check_cancel(cancel)
            self._enter(SyncStage.BOOTSTRAPPING)
            emitter.emit(SyncStage.BOOTSTRAPPING, f"Checking repository {owner}/{repo}...", 5)
            placeholder_head = self._bootstrap(owner, repo, branch)

            max_attempts = self.options.max_conflict_retries + 1
            for attempt in range(1, max_attempts + 1):
                result.attempts = attempt
                self._check_cancel(cancel)
                self._enter(SyncStage.DETECTING)
                emitter.emit(SyncStage.DETECTING, "Comparing files with the repository...", UPLOAD_START_PERCENT)
                detection = self.detector.detect(
                    owner,
                    repo,
                    branch,
                    snapshot,
                    # A conflict means the cache no longer describes the branch.
                    previous=previous if attempt == 1 else None,
                    fallback=fallback,
                    modes=modes,
                    placeholder_head=placeholder_head if attempt == 1 else None,
                    path_filter=path_filter,
                    cancel=cancel,
                )
                result.changes = detection.changes
                result.counts = detection.counts
                result.warning = detection.warning

                if not detection.has_changes:
                    return self._finish_without_changes(result, emitter)

                try:
                    return self._push(owner, repo, branch, detection, message, result, emitter, cancel)
                except ConflictError as exc:
                    if attempt >= max_attempts:
                        raise
                    logger.warning("Ref conflict on %s (attempt %d/%d): %s", branch, attempt, max_attempts, exc)
                    self._enter(SyncStage.CONFLICT_RETRY)
                    emitter.emit(SyncStage.CONFLICT_RETRY, "Branch moved; comparing against the new head...", 60)
            raise AssertionError("unreachable")
        except SyncCancelled as exc:
            if exc.uploaded_paths:
                result.uploaded_paths = sorted(exc.uploaded_paths)
            return self._fail(result, emitter, SyncOutcome.CANCELLED, exc)
        except ConflictError as exc:
            return self._fail(result, emitter, SyncOutcome.CONFLICT, exc)
        except BlobUploadError as exc:
            result.uploaded_paths = sorted(exc.succeeded_paths)
            result.failed_paths = sorted(exc.failed_paths)
            return self._fail(result, emitter, SyncOutcome.ERROR, exc)
        except SnapSyncError as exc:
            return self._fail(result, emitter, SyncOutcome.ERROR, exc)
        except Exception:
            self._enter(SyncStage.FAILED)
            emitter.emit(SyncStage.FAILED, "Sync failed unexpectedly", 100)
            raise

    def _push(
        self,
        owner: str,
        repo: str,
        branch: str,
        detection: DetectionResult,
        message: str | None,
        result: SyncResult,
        emitter: ProgressEmitter,
        cancel: threading.Event,
    ) -> SyncResult:
        self._check_cancel(cancel)
        self._enter(SyncStage.UPLOADING)
        to_upload = [change for change in detection.changes if change.needs_upload]
        emitter.emit(SyncStage.UPLOADING, f"Creating {len(to_upload)} blob(s)...", UPLOAD_START_PERCENT)

        def _on_blob(done: int, total: int) -> None:
            span = UPLOAD_END_PERCENT - UPLOAD_START_PERCENT
            emitter.emit(
                SyncStage.UPLOADING,
                f"Creating blob {done}/{total}...",
                UPLOAD_START_PERCENT + span * done // max(total, 1),
            )

        report = self.uploader.upload(owner, repo, detection.changes, cancel=cancel, on_progress=_on_blob)
        result.uploaded_paths = report.uploaded_paths

        self._check_cancel(cancel)
        self._enter(SyncStage.BUILDING_TREE)
        emitter.emit(SyncStage.BUILDING_TREE, "Creating tree...", 70)
        head = detection.head
        tree_sha = self.tree_builder.build(
            owner,
            repo,
            head.tree_sha if head else None,
            detection.changes,
            base_entries=detection.remote_entries,
            truncated=detection.truncated,
            delta=detection.remote_entries is None,
            cancel=cancel,
        )
        result.tree_sha = tree_sha
        if head is not None and tree_sha == head.tree_sha:
            logger.info("New tree equals the current head tree; no commit needed")
            return self._finish_without_changes(result, emitter)

        self._check_cancel(cancel)
        self._enter(SyncStage.COMMITTING)
        emitter.emit(SyncStage.COMMITTING, "Creating commit...", 85)
        plan = CommitPlan(
            base_tree_sha=head.tree_sha if head else None,
            parent_commit_sha=head.commit_sha if head else None,
            expected_ref_sha=detection.expected_ref_sha,
            message=message or default_commit_message(result),
            new_tree_sha=tree_sha,
        )
        result.commit_sha = self.committer.commit(owner, repo, branch, plan, cancel)

        self._enter(SyncStage.DONE)
        result.outcome = SyncOutcome.SUCCESS
        touched = len([change for change in detection.changes if change.status is not ChangeStatus.UNCHANGED])
        emitter.emit(SyncStage.DONE, f"Successfully pushed {touched} change(s) to {owner}/{repo}", 100)
        return result

    def _finish_without_changes(self, result: SyncResult, emitter: ProgressEmitter) -> SyncResult:
        self._enter(SyncStage.DONE)
        result.outcome = SyncOutcome.NO_CHANGES
        emitter.emit(SyncStage.DONE, "No changes to push", 100)
        return result

    def _fail(
        self,
        result: SyncResult,
        emitter: ProgressEmitter,
        outcome: SyncOutcome,
        exc: SnapSyncError,
    ) -> SyncResult:
        result.failed_stage = self.stage
        result.outcome = outcome
        result.error = exc.message
        self._enter(SyncStage.FAILED)
        logger.error("Sync failed during %s: %s", result.failed_stage.value, exc.message)
        emitter.emit(SyncStage.FAILED, exc.message, 100)
        return result


def _require_push_token(config: SnapSyncConfig) -> None:
    if not resolve_github_token(config.token):
        raise RuntimeError(
            "This command requires a GitHub token. Set `GITHUB_TOKEN` or update `.snapsync.json`."
        )


def _cache_key(config: SnapSyncConfig) -> str:
    return f"{config.repo_id}@{config.branch}"


async def load_cache(config: SnapSyncConfig) -> dict[str, str] | None:
    """Cached ``{path: sha}`` of the last push to this repo/branch, if any."""
    if await get_meta(config.state_db_path, LAST_BRANCH_KEY) != _cache_key(config):
        return None
    return await load_hashes(config.state_db_path)


def build_client(
    config: SnapSyncConfig,
    *,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> GitHubClient:
    engine = config.engine
    rate_limiter = RateLimiter(
        safety_buffer=engine.rate_limit_buffer,
        max_wait=engine.max_rate_limit_wait,
        min_interval=engine.min_request_interval,
        sleep=sleep,
    )
    return GitHubClient(
        EnvTokenProvider(config.token),
        rate_limiter,
        base_url=engine.api_url,
        transport=transport,
    )


async def detect_changes(
    config: SnapSyncConfig,
    source: SnapshotSource,
    *,
    path_filter: PathFilter | None = None,
    remote: bool = False,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DetectionResult:
    """Classify the snapshot without pushing it.

    Compares against the local cache unless ``remote`` is set, in which case
    the branch tree is listed (the cache only serves as a fallback).
    """
    snapshot = normalize_snapshot(source.get_snapshot(force_refresh=True), path_filter)
    cached = await load_cache(config)
    if not remote:
        return DetectionResult(changes=classify_changes(snapshot, cached or {}), source=SOURCE_CACHE)

    _require_push_token(config)
    with build_client(config, transport=transport, sleep=sleep) as client:
        retry = RetryPolicy(
            rate_limiter=client.rate_limiter,
            max_attempts=config.engine.max_attempts,
            base_delay=config.engine.base_delay,
            max_delay=config.engine.max_delay,
            sleep=sleep,
        )
        detector = ChangeDetector(client, retry)
        return await asyncio.to_thread(
            detector.detect,
            config.owner,
            config.repo,
            config.branch,
            snapshot,
            fallback=cached,
            path_filter=path_filter,
        )


async def push_snapshot(
    config: SnapSyncConfig,
    source: SnapshotSource,
    *,
    message: str | None = None,
    path_filter: PathFilter | None = None,
    force_remote: bool = False,
    force_refresh: bool = False,
    console: Console | None = None,
    progress: ProgressSink | None = None,
    cancel: threading.Event | None = None,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncResult:
    """Push the snapshot from ``source`` and refresh the local cache on success."""
    _require_push_token(config)
    cancel = cancel or threading.Event()

    snapshot = normalize_snapshot(source.get_snapshot(force_refresh=force_refresh), path_filter)
    cached = await load_cache(config)
    modes = await load_modes(config.state_db_path) if cached is not None else None
    previous = None
    if cached is not None and not (config.compare_with_remote or force_remote):
        previous = cached

    engine = config.engine
    own_sink = RichProgressSink(console) if progress is None and console is not None else None
    with build_client(config, transport=transport, sleep=sleep) as client, (own_sink or nullcontext()):
        orchestrator = SyncOrchestrator(
            client,
            client.rate_limiter,
            options=engine,
            progress=progress or own_sink,
            sleep=sleep,
        )
        try:
            result = await asyncio.to_thread(
                orchestrator.run,
                config.owner,
                config.repo,
                config.branch,
                snapshot,
                previous=previous,
                fallback=cached,
                modes=modes,
                message=message,
                path_filter=path_filter,
                normalize=False,
                cancel=cancel,
            )
        except (asyncio.CancelledError, KeyboardInterrupt):
            cancel.set()
            raise

    if result.ok and snapshot:
        await replace_snapshot(config.state_db_path, snapshot, tree_modes(result.changes))
        await set_meta(config.state_db_path, LAST_BRANCH_KEY, _cache_key(config))
        if result.commit_sha:
            await set_meta(config.state_db_path, LAST_COMMIT_KEY, result.commit_sha)
    return result


async def create_temporary_repo(
    config: SnapSyncConfig,
    source_repo: str,
    *,
    branch: str | None = None,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Create a disposable staging repository under the configured owner."""
    _require_push_token(config)
    with build_client(config, transport=transport, sleep=sleep) as client:
        bootstrapper = RepositoryBootstrapper(
            client, propagation_delay=config.engine.propagation_delay, sleep=sleep
        )
        return await asyncio.to_thread(
            bootstrapper.create_temporary_repo, config.owner, source_repo, branch or config.branch
        )


async def delete_temporary_repo(
    config: SnapSyncConfig,
    name: str,
    *,
    transport: httpx.BaseTransport | None = None,
) -> None:
    _require_push_token(config)
    with build_client(config, transport=transport) as client:
        bootstrapper = RepositoryBootstrapper(client)
        await asyncio.to_thread(bootstrapper.delete_repo, config.owner, name)
