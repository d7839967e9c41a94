"""SQLite implementation of the key-value backend."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from ...errors import PersistenceError
from .base import KeyValueBackend


class SQLiteBackend(KeyValueBackend):
    """Persist workflow records in a single SQLite table."""

    def __init__(
        self, db_path: str | Path, clock: Callable[[], float] = time.time
    ) -> None:
        self.db_path = str(db_path)
        self._clock = clock
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._ensure_schema()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open SQLite store {self.db_path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _run(self, fn: Callable[[sqlite3.Cursor], Any]) -> Any:
        """Run ``fn`` in one committed transaction, mapping engine errors."""
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("DELETE FROM kv WHERE expires_at <= ?", (self._clock(),))
                result = fn(cur)
                self._conn.commit()
                return result
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"SQLite store failure: {exc}") from exc

    async def _call(self, fn: Callable[[sqlite3.Cursor], Any]) -> Any:
        return await asyncio.to_thread(self._run, fn)

    # ------------------------------------------------------------------
    # Backend API
    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)

    async def get(self, key: str) -> Optional[str]:
        def fn(cur: sqlite3.Cursor) -> Optional[str]:
            cur.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = cur.fetchone()
            return row[0] if row else None

        return await self._call(fn)

    async def set(self, key: str, value: str, ttl: int) -> None:
        def fn(cur: sqlite3.Cursor) -> None:
            cur.execute(
                "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, value, self._clock() + ttl),
            )

        await self._call(fn)

    async def compare_and_swap(
        self, key: str, expected: Optional[str], value: str, ttl: int
    ) -> bool:
        def fn(cur: sqlite3.Cursor) -> bool:
            expires_at = self._clock() + ttl
            if expected is None:
                cur.execute(
                    "INSERT OR IGNORE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, value, expires_at),
                )
            else:
                cur.execute(
                    "UPDATE kv SET value = ?, expires_at = ? WHERE key = ? AND value = ?",
                    (value, expires_at, key, expected),
                )
            return cur.rowcount == 1

        return await self._call(fn)

    async def delete(self, key: str) -> bool:
        def fn(cur: sqlite3.Cursor) -> bool:
            cur.execute("DELETE FROM kv WHERE key = ?", (key,))
            return cur.rowcount == 1

        return await self._call(fn)

    async def scan(self, prefix: str) -> list[str]:
        def fn(cur: sqlite3.Cursor) -> list[str]:
            cur.execute(
                "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
                (len(prefix), prefix),
            )
            return [row[0] for row in cur.fetchall()]

        return await self._call(fn)
