"""End-to-end tests for the sync orchestrator against the in-memory GitHub."""

import asyncio
import threading

import pytest

from fake_github import TOKEN
from snapsync.config import EngineOptions, SnapSyncConfig
from snapsync.models import ChangeStatus, SyncOutcome, SyncStage
from snapsync.scanner import DirectorySnapshotSource, StaticSnapshotSource, git_blob_sha, snapshot_from_mapping
from snapsync.state_db import LAST_COMMIT_KEY, get_meta, load_hashes, load_modes
from snapsync.sync_engine import SyncOrchestrator, build_client, detect_changes, push_snapshot


@pytest.fixture
def make_orchestrator(client, rate_limiter, clock, sink):
    def factory(progress=sink, **options):
        return SyncOrchestrator(
            client,
            rate_limiter,
            options=EngineOptions(**options),
            progress=progress,
            sleep=clock.sleep,
        )

    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


def _move_branch_on_commit(github, repo, times=1):
    """Simulate another writer pushing right after our commit object is created."""
    moved = []

    def hook(method, path):
        if method == "POST" and path.endswith("/git/commits") and len(moved) < times:
            moved.append(repo.commit_files({f"other{len(moved)}.txt": "theirs"}, replace=False))

    github.hooks.append(hook)
    return moved


# ---------------------------------------------------------------------------
# happy paths
# ---------------------------------------------------------------------------


class TestSync:
    def test_scenario_a_new_repository(self, github, orchestrator, owner):
        snapshot = snapshot_from_mapping({"a.txt": "1", "b.txt": "2"})

        result = orchestrator.run(owner, "fresh", "main", snapshot)

        assert result.outcome is SyncOutcome.SUCCESS
        repo = github.repo(owner, "fresh")
        assert repo.private
        assert repo.history() == [result.commit_sha]
        assert repo.files() == {"a.txt": b"1", "b.txt": b"2"}
        assert result.counts[ChangeStatus.ADDED] == 2
        assert len(github.calls("POST", r"/git/blobs$")) == 2
        assert repo.commits[result.commit_sha]["message"] == "Sync snapshot via snapsync\n\nUpdated 2 files"

    def test_scenario_b_existing_repository(self, github, orchestrator, seeded_repo, owner):
        old_head = seeded_repo.head()

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "1", "c.txt": "3"}))

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.paths_with_status(ChangeStatus.UNCHANGED) == ["a.txt"]
        assert result.paths_with_status(ChangeStatus.DELETED) == ["b.txt"]
        assert result.paths_with_status(ChangeStatus.ADDED) == ["c.txt"]
        assert result.uploaded_paths == ["c.txt"]
        assert seeded_repo.files() == {"a.txt": b"1", "c.txt": b"3"}
        assert seeded_repo.commits[result.commit_sha]["parents"] == [old_head]

    def test_existing_empty_repository_gets_single_commit(self, github, orchestrator, owner):
        repo = github.add_repo(owner, "blank")

        result = orchestrator.run(owner, "blank", "main", snapshot_from_mapping({"index.html": "<p>hi</p>"}))

        assert result.outcome is SyncOutcome.SUCCESS
        assert repo.history() == [result.commit_sha]
        assert repo.files() == {"index.html": b"<p>hi</p>"}

    def test_new_branch_in_existing_repository(self, github, orchestrator, seeded_repo, owner):
        result = orchestrator.run(owner, "site", "gh-pages", snapshot_from_mapping({"index.html": "x"}))

        assert result.outcome is SyncOutcome.SUCCESS
        assert seeded_repo.files("gh-pages") == {"index.html": b"x"}
        assert seeded_repo.files("main") == {"a.txt": b"1", "b.txt": b"2"}

    def test_round_trip_matches_snapshot(self, github, orchestrator, owner):
        files = {
            "index.html": "<html></html>",
            "css/site.css": "body {}",
            "js/deep/app.js": "console.log(1)",
            "img/logo.bin": b"\x89PNG\x00\x01",
            "empty.txt": "",
        }
        result = orchestrator.run(owner, "fresh", "main", snapshot_from_mapping(files))

        assert result.ok
        expected = {path: content.encode() if isinstance(content, str) else content for path, content in files.items()}
        assert github.repo(owner, "fresh").files() == expected

    def test_second_run_is_a_no_op(self, github, orchestrator, seeded_repo, owner):
        snapshot = snapshot_from_mapping({"a.txt": "1", "c.txt": "3"})
        first = orchestrator.run(owner, "site", "main", snapshot)
        head = seeded_repo.head()
        blob_posts = len(github.calls("POST", r"/git/blobs$"))

        second = orchestrator.run(owner, "site", "main", snapshot)

        assert first.outcome is SyncOutcome.SUCCESS
        assert second.outcome is SyncOutcome.NO_CHANGES
        assert second.commit_sha is None
        assert seeded_repo.head() == head
        assert len(github.calls("POST", r"/git/blobs$")) == blob_posts

    def test_custom_message(self, github, orchestrator, seeded_repo, owner):
        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "9"}), message="Deploy v2")
        assert seeded_repo.commits[result.commit_sha]["message"] == "Deploy v2"

    def test_normalizes_snapshot(self, github, orchestrator, owner):
        snapshot = snapshot_from_mapping(
            {"project/": "", "project/src": "", "project/src/a.py": "a", "project/debug.log": "x"}
        )

        result = orchestrator.run(owner, "fresh", "main", snapshot)

        assert result.ok
        assert github.repo(owner, "fresh").files() == {"src/a.py": b"a"}

    def test_empty_snapshot_never_touches_remote(self, github, orchestrator, seeded_repo, owner):
        result = orchestrator.run(owner, "site", "main", {})

        assert result.outcome is SyncOutcome.NO_CHANGES
        assert result.warning
        assert github.requests == []

    def test_cache_comparison_skips_tree_listing(self, github, orchestrator, seeded_repo, owner):
        previous = {"a.txt": git_blob_sha(b"1"), "b.txt": git_blob_sha(b"2")}

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "1"}), previous=previous)

        assert result.ok
        assert seeded_repo.files() == {"a.txt": b"1"}
        assert not github.calls("GET", r"/git/trees/")


# ---------------------------------------------------------------------------
# progress reporting
# ---------------------------------------------------------------------------


class TestProgress:
    def test_events_are_ordered_and_monotonic(self, orchestrator, sink, seeded_repo, owner):
        orchestrator.run(owner, "site", "main", snapshot_from_mapping({f"f{i}.txt": str(i) for i in range(8)}))

        assert sink.percents == sorted(sink.percents)
        assert sink.percents[-1] == 100
        assert sink.stages[0] is SyncStage.BOOTSTRAPPING
        assert sink.stages[-1] is SyncStage.DONE
        stage_order = [SyncStage.DETECTING, SyncStage.UPLOADING, SyncStage.BUILDING_TREE, SyncStage.COMMITTING]
        first_seen = [sink.stages.index(stage) for stage in stage_order]
        assert first_seen == sorted(first_seen)
        uploads = [event.percent for event in sink.events if event.stage is SyncStage.UPLOADING]
        assert uploads[-1] == 60

    def test_failing_sink_does_not_abort(self, make_orchestrator, seeded_repo, owner):
        class BrokenSink:
            def emit(self, event):
                raise RuntimeError("display went away")

        orchestrator = make_orchestrator(progress=BrokenSink())
        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "2"}))

        assert result.outcome is SyncOutcome.SUCCESS

    def test_failure_ends_at_100(self, github, orchestrator, sink, seeded_repo, owner):
        github.fail("POST", r"/git/trees$", 422)

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "2"}))

        assert result.outcome is SyncOutcome.ERROR
        assert sink.stages[-1] is SyncStage.FAILED
        assert sink.percents[-1] == 100


# ---------------------------------------------------------------------------
# conflicts, failures, cancellation
# ---------------------------------------------------------------------------


class TestConflicts:
    def test_scenario_f_single_conflict_retry(self, github, orchestrator, seeded_repo, owner):
        moved = _move_branch_on_commit(github, seeded_repo)

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "1", "c.txt": "3"}))

        assert result.outcome is SyncOutcome.SUCCESS
        assert result.attempts == 2
        assert orchestrator.transitions.count(SyncStage.CONFLICT_RETRY) == 1
        assert seeded_repo.commits[result.commit_sha]["parents"] == moved
        # The snapshot is the source of truth: the other writer's file is removed.
        assert seeded_repo.files() == {"a.txt": b"1", "c.txt": b"3"}

    def test_conflict_retries_are_bounded(self, github, make_orchestrator, seeded_repo, owner):
        orchestrator = make_orchestrator(max_conflict_retries=2)
        _move_branch_on_commit(github, seeded_repo, times=10)

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "mine"}))

        assert result.outcome is SyncOutcome.CONFLICT
        assert result.attempts == 3
        assert result.failed_stage is SyncStage.COMMITTING
        assert orchestrator.transitions.count(SyncStage.CONFLICT_RETRY) == 2
        assert seeded_repo.files()["a.txt"] == b"1"


class TestFailures:
    def test_blob_failure_reports_paths_and_keeps_branch(self, github, orchestrator, seeded_repo, owner):
        head = seeded_repo.head()
        github.fail("POST", r"/git/blobs$", 500, times=100)

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "1", "c.txt": "3"}))

        assert result.outcome is SyncOutcome.ERROR
        assert result.failed_stage is SyncStage.UPLOADING
        assert result.failed_paths == ["c.txt"]
        assert result.counts[ChangeStatus.ADDED] == 1
        assert seeded_repo.head() == head

    def test_scenario_d_transient_blob_errors_recover(self, github, orchestrator, seeded_repo, owner):
        github.fail("POST", r"/git/blobs$", 500, times=2)

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"x.txt": "x"}))

        assert result.outcome is SyncOutcome.SUCCESS
        assert len(github.calls("POST", r"/git/blobs$")) == 3

    def test_auth_failure_is_reported(self, github, orchestrator, seeded_repo, owner):
        github.tokens = set()

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "2"}))

        assert result.outcome is SyncOutcome.ERROR
        assert result.failed_stage is SyncStage.BOOTSTRAPPING
        assert "rejected" in result.error


class TestCancellation:
    def test_cancel_before_start(self, github, orchestrator, seeded_repo, owner):
        cancel = threading.Event()
        cancel.set()
        head = seeded_repo.head()

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "2"}), cancel=cancel)

        assert result.outcome is SyncOutcome.CANCELLED
        assert seeded_repo.head() == head

    def test_cancel_during_upload(self, github, make_orchestrator, seeded_repo, owner):
        cancel = threading.Event()

        class CancellingSink:
            def emit(self, event):
                if event.stage is SyncStage.UPLOADING:
                    cancel.set()

        orchestrator = make_orchestrator(progress=CancellingSink())
        head = seeded_repo.head()

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "2"}), cancel=cancel)

        assert result.outcome is SyncOutcome.CANCELLED
        assert result.failed_stage is SyncStage.UPLOADING
        assert seeded_repo.head() == head
        assert not github.calls("POST", r"/git/commits$")

    def test_cancel_mid_upload_reports_uploaded_paths(self, github, make_orchestrator, seeded_repo, owner):
        cancel = threading.Event()
        posted = []

        def hook(method, path):
            if method == "POST" and path.endswith("/git/blobs"):
                posted.append(path)
                if len(posted) == 2:
                    cancel.set()

        github.hooks.append(hook)
        orchestrator = make_orchestrator(max_concurrency=2)
        snapshot = snapshot_from_mapping({f"f{i}.txt": str(i) for i in range(4)})

        result = orchestrator.run(owner, "site", "main", snapshot, cancel=cancel)

        assert result.outcome is SyncOutcome.CANCELLED
        assert result.uploaded_paths == ["f0.txt", "f1.txt"]
        assert len(github.calls("POST", r"/git/blobs$")) == 2


class TestRateLimit:
    def test_scenario_e_pause_mid_batch(self, github, make_orchestrator, seeded_repo, clock, owner):
        orchestrator = make_orchestrator(max_concurrency=2)
        start = clock.now
        # Five reads before the first blob leave 13 calls; the third window drops inside the buffer.
        github.set_rate_limit(remaining=18, reset_in=5)

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({f"f{i}.txt": str(i) for i in range(6)}))

        assert result.outcome is SyncOutcome.SUCCESS
        assert github.rate_limited_requests == 0
        blob_times = [
            at
            for (method, path), at in zip(github.requests, github.request_times)
            if method == "POST" and path.endswith("/git/blobs")
        ]
        assert all(at < start + 5 for at in blob_times[:4])
        assert all(at >= start + 5 for at in blob_times[4:])

    @pytest.mark.parametrize("rejections", [1, 3])
    def test_secondary_limit_waits_retry_after(self, github, make_orchestrator, seeded_repo, clock, owner, rejections):
        orchestrator = make_orchestrator()
        start = clock.now
        # The primary window still has plenty left and resets an hour out.
        github.fail("POST", r"/git/blobs$", 429, times=rejections, headers={"retry-after": "2"})

        snapshot = snapshot_from_mapping({"a.txt": "1", "b.txt": "2", "c.txt": "3"})

        result = orchestrator.run(owner, "site", "main", snapshot)

        assert result.outcome is SyncOutcome.SUCCESS
        assert seeded_repo.files()["c.txt"] == b"3"
        assert clock.now - start == pytest.approx(2 * rejections)


# ---------------------------------------------------------------------------
# file modes
# ---------------------------------------------------------------------------


class TestModes:
    def test_cache_comparison_keeps_executable_bit(self, orchestrator, seeded_repo, owner):
        seeded_repo.chmod("b.txt", "100755")
        previous = {"a.txt": git_blob_sha(b"1"), "b.txt": git_blob_sha(b"2")}

        result = orchestrator.run(
            owner,
            "site",
            "main",
            snapshot_from_mapping({"a.txt": "1", "b.txt": "22"}),
            previous=previous,
            modes={"b.txt": "100755"},
        )

        assert result.outcome is SyncOutcome.SUCCESS
        assert seeded_repo.tree_of()["b.txt"] == ("100755", git_blob_sha(b"22"))
        assert seeded_repo.tree_of()["a.txt"][0] == "100644"

    def test_remote_comparison_keeps_executable_bit(self, orchestrator, seeded_repo, owner):
        seeded_repo.chmod("b.txt", "100755")

        result = orchestrator.run(owner, "site", "main", snapshot_from_mapping({"a.txt": "11", "b.txt": "22"}))

        assert result.outcome is SyncOutcome.SUCCESS
        assert seeded_repo.tree_of()["b.txt"][0] == "100755"


# ---------------------------------------------------------------------------
# async entry points with the local cache
# ---------------------------------------------------------------------------


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.setenv("GITHUB_TOKEN", TOKEN)
    (tmp_path / "index.html").write_text("<h1>hi</h1>")
    (tmp_path / "css").mkdir()
    (tmp_path / "css" / "site.css").write_text("body {}")
    return tmp_path


@pytest.fixture
def config(workspace, owner):
    return SnapSyncConfig(repo_id=f"{owner}/site", token="", local_root=str(workspace))


class TestPushSnapshot:
    def test_push_updates_cache(self, github, config, workspace, clock, owner):
        result = asyncio.run(
            push_snapshot(config, DirectorySnapshotSource(workspace), transport=github.transport, sleep=clock.sleep)
        )

        assert result.outcome is SyncOutcome.SUCCESS
        assert github.repo(owner, "site").files() == {"index.html": b"<h1>hi</h1>", "css/site.css": b"body {}"}
        hashes = asyncio.run(load_hashes(config.state_db_path))
        assert hashes == {"index.html": git_blob_sha(b"<h1>hi</h1>"), "css/site.css": git_blob_sha(b"body {}")}
        assert asyncio.run(get_meta(config.state_db_path, LAST_COMMIT_KEY)) == result.commit_sha

    def test_cache_mode_skips_remote_tree(self, github, config, workspace, clock, owner):
        asyncio.run(push_snapshot(config, DirectorySnapshotSource(workspace), transport=github.transport, sleep=clock.sleep))
        config.compare_with_remote = False
        (workspace / "index.html").write_text("<h1>v2</h1>")
        github.requests.clear()

        result = asyncio.run(
            push_snapshot(config, DirectorySnapshotSource(workspace), transport=github.transport, sleep=clock.sleep)
        )

        assert result.paths_with_status(ChangeStatus.MODIFIED) == ["index.html"]
        assert not github.calls("GET", r"/git/trees/")

    def test_failed_push_keeps_cache(self, github, config, workspace, clock, owner):
        github.fail("POST", r"/git/trees$", 422)

        result = asyncio.run(
            push_snapshot(config, DirectorySnapshotSource(workspace), transport=github.transport, sleep=clock.sleep)
        )

        assert result.outcome is SyncOutcome.ERROR
        assert asyncio.run(load_hashes(config.state_db_path)) == {}

    def test_requires_token(self, config, monkeypatch):
        monkeypatch.delenv("GITHUB_TOKEN", raising=False)
        monkeypatch.delenv("GH_TOKEN", raising=False)
        with pytest.raises(RuntimeError):
            asyncio.run(push_snapshot(config, StaticSnapshotSource({"a.txt": "1"})))

    def test_detect_changes_local_and_remote(self, github, config, workspace, owner):
        github.add_repo(owner, "site", {"index.html": "<h1>hi</h1>", "old.txt": "x"})

        local = asyncio.run(detect_changes(config, DirectorySnapshotSource(workspace)))
        remote = asyncio.run(
            detect_changes(config, DirectorySnapshotSource(workspace), remote=True, transport=github.transport)
        )

        assert local.counts[ChangeStatus.ADDED] == 2
        statuses = {change.path: change.status for change in remote.changes}
        assert statuses == {
            "css/site.css": ChangeStatus.ADDED,
            "index.html": ChangeStatus.UNCHANGED,
            "old.txt": ChangeStatus.DELETED,
        }

    def test_cached_modes_survive_cache_mode_push(self, github, config, workspace, clock, owner):
        repo = github.add_repo(owner, "site", {"index.html": "<h1>hi</h1>", "css/site.css": "body {}"})
        repo.chmod("index.html", "100755")
        asyncio.run(push_snapshot(config, DirectorySnapshotSource(workspace), transport=github.transport, sleep=clock.sleep))
        assert asyncio.run(load_modes(config.state_db_path))["index.html"] == "100755"

        config.compare_with_remote = False
        (workspace / "index.html").write_text("<h1>v2</h1>")
        result = asyncio.run(
            push_snapshot(config, DirectorySnapshotSource(workspace), transport=github.transport, sleep=clock.sleep)
        )

        assert result.outcome is SyncOutcome.SUCCESS
        assert repo.tree_of()["index.html"] == ("100755", git_blob_sha(b"<h1>v2</h1>"))

    def test_client_spacing_comes_from_engine_options(self, config):
        config.engine = EngineOptions(min_request_interval=1.5)
        with build_client(config) as client:
            assert client.rate_limiter.min_interval == 1.5
