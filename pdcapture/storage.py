"""
Session key-value store backed by sqlite.

Keys are namespaced strings (``captures:<tabId>``), values are JSON.
"""

import json
import logging
import sqlite3
from pathlib import Path
from typing import List

import aiosqlite

logger = logging.getLogger('pdcapture.storage')

CAPTURE_KEY_PREFIX = "captures:"


class StorageError(Exception):
    """Raised when the underlying database cannot be read or written."""


def capture_key(tab_id: int) -> str:
    return f"{CAPTURE_KEY_PREFIX}{tab_id}"


class CaptureStore:
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def init(self, reset: bool = True):
        """Create the schema; a fresh session starts with no captures."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY, value TEXT NOT NULL)""")
                if reset:
                    await db.execute("DELETE FROM kv WHERE key LIKE ?", (f"{CAPTURE_KEY_PREFIX}%",))
                await db.commit()
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            raise StorageError(f"init failed: {e}") from e
        logger.debug('Store ready at %s', self.db_path)

    async def get(self, key: str) -> list:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
                row = await cursor.fetchone()
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            raise StorageError(f"read {key} failed: {e}") from e
        if not row:
            return []
        try:
            value = json.loads(row[0])
        except ValueError:
            logger.warning('Discarding unreadable value under %s', key)
            return []
        return value if isinstance(value, list) else []

    async def set(self, key: str, value: list):
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    "INSERT INTO kv (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, json.dumps(value)))
                await db.commit()
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            raise StorageError(f"write {key} failed: {e}") from e

    async def remove(self, key: str):
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("DELETE FROM kv WHERE key = ?", (key,))
                await db.commit()
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            raise StorageError(f"remove {key} failed: {e}") from e

    async def keys(self, prefix: str = CAPTURE_KEY_PREFIX) -> List[str]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT key FROM kv WHERE key LIKE ? ORDER BY key", (f"{prefix}%",))
                rows = await cursor.fetchall()
        except (aiosqlite.Error, sqlite3.Error, OSError) as e:
            raise StorageError(f"list {prefix} failed: {e}") from e
        return [r[0] for r in rows]
