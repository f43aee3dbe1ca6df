from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

import aiosqlite

from snapsync.models import FileSnapshot, TreeMode


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS file_state (
    path TEXT PRIMARY KEY,
    content_hash TEXT NOT NULL,
    size INTEGER NOT NULL,
    mode TEXT NOT NULL DEFAULT '100644'
);
"""

META_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

LAST_COMMIT_KEY = "last_commit_sha"
LAST_BRANCH_KEY = "last_branch"


async def ensure_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(SCHEMA_SQL)
        await db.execute(META_SCHEMA_SQL)
        cursor = await db.execute("PRAGMA table_info(file_state)")
        columns = {str(row[1]) for row in await cursor.fetchall()}
        await cursor.close()
        if "mode" not in columns:
            # Caches written before modes were tracked.
            await db.execute("ALTER TABLE file_state ADD COLUMN mode TEXT NOT NULL DEFAULT '100644'")
        await db.commit()


async def load_hashes(db_path: Path) -> dict[str, str]:
    """Return ``{path: content_hash}`` for the last successfully pushed snapshot."""
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        cursor = await db.execute("SELECT path, content_hash FROM file_state ORDER BY path")
        rows = await cursor.fetchall()
        await cursor.close()

    return {str(row["path"]): str(row["content_hash"]) for row in rows}


async def load_modes(db_path: Path) -> dict[str, str]:
    """Return ``{path: tree mode}`` recorded with the last pushed snapshot."""
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute("SELECT path, mode FROM file_state ORDER BY path")
        rows = await cursor.fetchall()
        await cursor.close()

    return {str(row[0]): str(row[1]) for row in rows}


async def replace_snapshot(db_path: Path, snapshot: FileSnapshot, modes: Mapping[str, str] | None = None) -> None:
    modes = modes or {}
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute("DELETE FROM file_state")
        if snapshot:
            await db.executemany(
                """
                INSERT INTO file_state (path, content_hash, size, mode)
                VALUES (?, ?, ?, ?)
                """,
                [
                    (path, entry.content_hash, entry.size, modes.get(path, TreeMode.BLOB.value))
                    for path, entry in sorted(snapshot.items())
                ],
            )
        await db.commit()


async def get_meta(db_path: Path, key: str) -> str | None:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        cursor = await db.execute(
            "SELECT value FROM sync_meta WHERE key = ?",
            (key,),
        )
        row = await cursor.fetchone()
        await cursor.close()
    if row is None:
        return None
    return str(row[0])


async def set_meta(db_path: Path, key: str, value: str) -> None:
    await ensure_db(db_path)
    async with aiosqlite.connect(db_path) as db:
        await db.execute(
            """
            INSERT OR REPLACE INTO sync_meta (key, value) VALUES (?, ?)
            """,
            (key, value),
        )
        await db.commit()
