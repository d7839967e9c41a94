"""In-memory key-value backend."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Optional, Tuple

from .base import KeyValueBackend


class InMemoryBackend(KeyValueBackend):
    """Store values in local memory with expiry deadlines.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. ``clock`` returns seconds and can be
    replaced to test expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, Tuple[str, float]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if deadline <= self._clock():
            del self._data[key]
            return None
        return value

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    async def compare_and_swap(
        self, key: str, expected: Optional[str], value: str, ttl: int
    ) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            found = self._live(key) is not None
            self._data.pop(key, None)
            return found

    async def scan(self, prefix: str) -> list[str]:
        async with self._lock:
            return [
                key
                for key in list(self._data)
                if key.startswith(prefix) and self._live(key) is not None
            ]
