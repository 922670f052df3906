"""
Ephemeral SQLite mirror of the current collection.

Lets out-of-process display consumers read the collection. The file is
scoped to one monitored session: open() discards anything left behind by
an earlier run and wipe() removes the file entirely.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, List

import aiosqlite

from .collector import CollectionEntry

logger = logging.getLogger("tokenwire.mirror")

_SCHEMA = """CREATE TABLE IF NOT EXISTS entries (
    position INTEGER PRIMARY KEY, token TEXT NOT NULL UNIQUE,
    source TEXT NOT NULL, first_seen_at TEXT NOT NULL)"""


class SessionMirror:
    def __init__(self, path):
        self.path = Path(path).expanduser()
        self._lock = asyncio.Lock()

    async def open(self):
        async with self._lock:
            self._remove_files()
            self._prepare()
            async with aiosqlite.connect(self.path) as db:
                await db.execute(_SCHEMA)
                await db.commit()
        logger.debug("Mirror opened at %s", self.path)

    async def sync(self, read_entries: Callable[[], List[CollectionEntry]]):
        """Rewrite the mirror from the collection as it is when the lock is held."""
        async with self._lock:
            entries = read_entries()
            self._prepare()
            async with aiosqlite.connect(self.path) as db:
                await db.execute(_SCHEMA)
                await db.execute("DELETE FROM entries")
                await db.executemany(
                    "INSERT INTO entries (position, token, source, first_seen_at) VALUES (?,?,?,?)",
                    [(i, e.token, e.representative_source, e.first_seen_at.isoformat())
                     for i, e in enumerate(entries)],
                )
                await db.commit()

    async def read(self) -> List[dict]:
        async with self._lock:
            if not self.path.exists():
                return []
            async with aiosqlite.connect(self.path) as db:
                await db.execute(_SCHEMA)
                cursor = await db.execute(
                    "SELECT token, source, first_seen_at FROM entries ORDER BY position")
                rows = await cursor.fetchall()
        return [{"token": r[0], "source": r[1], "first_seen_at": r[2]} for r in rows]

    async def wipe(self):
        async with self._lock:
            self._remove_files()
        logger.info("Mirror wiped")

    def _prepare(self):
        """Create the database file readable by the owner only."""
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.path.touch(mode=0o600, exist_ok=True)
        self.path.chmod(0o600)

    def _remove_files(self):
        for suffix in ("", "-journal", "-wal", "-shm"):
            Path(f"{self.path}{suffix}").unlink(missing_ok=True)
