from __future__ import annotations

import hashlib
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from snapsync.config import CONFIG_FILENAME, STATE_DB_FILENAME
from snapsync.filters import PathFilter
from snapsync.models import FileEntry, FileSnapshot


EXCLUDED_FILENAMES = {CONFIG_FILENAME, STATE_DB_FILENAME}
EXCLUDED_DIRS = {".git"}


def git_blob_sha(content: bytes) -> str:
    """Return the sha GitHub assigns to a blob holding ``content``."""
    digest = hashlib.sha1()
    digest.update(b"blob %d\0" % len(content))
    digest.update(content)
    return digest.hexdigest()


def make_entry(content: bytes | str) -> FileEntry:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return FileEntry(content=content, content_hash=git_blob_sha(content))


def snapshot_from_mapping(files: Mapping[str, bytes | str]) -> FileSnapshot:
    return {path: make_entry(content) for path, content in files.items()}


@runtime_checkable
class SnapshotSource(Protocol):
    def get_snapshot(self, force_refresh: bool = False) -> FileSnapshot:
        ...


def _discover_candidates(root: Path, path_filter: PathFilter) -> list[tuple[Path, str]]:
    candidates: list[tuple[Path, str]] = []

    for file_path in sorted(root.rglob("*")):
        if not file_path.is_file():
            continue
        rel_parts = file_path.relative_to(root).parts
        if file_path.name in EXCLUDED_FILENAMES:
            continue
        if any(part in EXCLUDED_DIRS for part in rel_parts[:-1]):
            continue

        relative_path = Path(*rel_parts).as_posix()
        if not path_filter.matches(relative_path):
            continue
        candidates.append((file_path, relative_path))

    return candidates


def scan_local_files(root: Path, *, path_filter: PathFilter | None = None) -> FileSnapshot:
    root = root.resolve()
    path_filter = path_filter or PathFilter()
    return {
        relative_path: make_entry(file_path.read_bytes())
        for file_path, relative_path in _discover_candidates(root, path_filter)
    }


class DirectorySnapshotSource:
    """Snapshot Source backed by a local directory tree."""

    def __init__(self, root: Path, *, path_filter: PathFilter | None = None) -> None:
        self.root = root.resolve()
        self.path_filter = path_filter or PathFilter()
        self._cached: FileSnapshot | None = None

    def get_snapshot(self, force_refresh: bool = False) -> FileSnapshot:
        if self._cached is None or force_refresh:
            if not self.root.exists():
                raise FileNotFoundError(f"Snapshot root does not exist: {self.root}")
            self._cached = scan_local_files(self.root, path_filter=self.path_filter)
        return dict(self._cached)


class StaticSnapshotSource:
    """Snapshot Source over an in-memory mapping, e.g. files extracted from an archive."""

    def __init__(self, files: Mapping[str, bytes | str]) -> None:
        self._snapshot = snapshot_from_mapping(files)

    def get_snapshot(self, force_refresh: bool = False) -> FileSnapshot:
        return dict(self._snapshot)
