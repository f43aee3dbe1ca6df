"""Tests for snapshot sources and blob hashing."""

import pytest

from snapsync.filters import build_path_filter
from snapsync.scanner import (
    DirectorySnapshotSource,
    SnapshotSource,
    StaticSnapshotSource,
    git_blob_sha,
    make_entry,
)


def test_git_blob_sha_matches_git():
    assert git_blob_sha(b"") == "e69de29bb2d1d6434b8b29ae775ad8c2e48c5391"
    assert git_blob_sha(b"hello world\n") == "3b18e512dba79e4c8300dd08aeb37f8e728b8dad"


def test_make_entry_encodes_text():
    entry = make_entry("héllo")
    assert entry.content == "héllo".encode("utf-8")
    assert entry.size == len(entry.content)
    assert entry.content_hash == git_blob_sha(entry.content)


@pytest.fixture
def tree(tmp_path):
    (tmp_path / "index.html").write_text("<h1>hi</h1>")
    (tmp_path / "css").mkdir()
    (tmp_path / "css" / "site.css").write_text("body {}")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main")
    (tmp_path / ".snapsync.json").write_text("{}")
    (tmp_path / ".snapsync_state.db").write_bytes(b"")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("x")
    return tmp_path


class TestDirectorySource:
    def test_scan_skips_tool_files_and_git(self, tree):
        snapshot = DirectorySnapshotSource(tree).get_snapshot()
        assert sorted(snapshot) == ["css/site.css", "index.html", "node_modules/dep.js"]
        assert snapshot["index.html"].content == b"<h1>hi</h1>"

    def test_path_filter_applies(self, tree):
        source = DirectorySnapshotSource(tree, path_filter=build_path_filter(None, ["node_modules/*"]))
        assert sorted(source.get_snapshot()) == ["css/site.css", "index.html"]

    def test_snapshot_is_cached_until_refresh(self, tree):
        source = DirectorySnapshotSource(tree)
        source.get_snapshot()
        (tree / "new.txt").write_text("new")

        assert "new.txt" not in source.get_snapshot()
        assert "new.txt" in source.get_snapshot(force_refresh=True)

    def test_returned_snapshot_is_a_copy(self, tree):
        source = DirectorySnapshotSource(tree)
        source.get_snapshot().clear()
        assert source.get_snapshot()

    def test_missing_root(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            DirectorySnapshotSource(tmp_path / "missing").get_snapshot()


def test_static_source():
    source = StaticSnapshotSource({"a.txt": "1", "img.bin": b"\x00\x01"})

    assert isinstance(source, SnapshotSource)
    snapshot = source.get_snapshot()
    assert snapshot["img.bin"].content == b"\x00\x01"
    assert snapshot["a.txt"].content_hash == git_blob_sha(b"1")
