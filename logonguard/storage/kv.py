"""Async key-value stores used for local overrides and fetched-rule caches."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Optional, Protocol

import aiosqlite

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Interface for the persistence layer (values are JSON-compatible)."""

    async def get(self, key: str) -> Optional[Any]:  # pragma: no cover - interface
        ...

    async def set(self, key: str, value: Any) -> None:  # pragma: no cover - interface
        ...

    async def delete(self, key: str) -> None:  # pragma: no cover - interface
        ...


class MemoryStore:
    """In-process store; values are deep-copied so callers cannot alias them."""

    def __init__(self, initial: Optional[dict] = None):
        self._data: dict[str, Any] = copy.deepcopy(initial or {})

    async def get(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self._data.get(key))

    async def set(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class SQLiteStore:
    """Async SQLite-backed store with a single `kv` table of JSON values."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self):
        """Open the database and create the table."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        try:
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA busy_timeout=5000")
        except aiosqlite.Error as exc:
            logger.debug("SQLite pragmas rejected: %s", exc)
        async with self._lock:
            await self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await self._connection.commit()

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("SQLiteStore is not connected")
        return self._connection

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            cursor = await self._conn().execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = await cursor.fetchone()
            await cursor.close()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt value for key %s", key)
            return None

    async def set(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        async with self._lock:
            await self._conn().execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                """,
                (key, payload),
            )
            await self._conn().commit()

    async def delete(self, key: str) -> None:
        async with self._lock:
            await self._conn().execute("DELETE FROM kv WHERE key = ?", (key,))
            await self._conn().commit()
