"""Key-value backend interface for workflow persistence."""

from __future__ import annotations

import abc
from typing import Optional


class KeyValueBackend(metaclass=abc.ABCMeta):
    """Abstract string key-value store with per-key expiry.

    Every write carries a TTL in seconds. Expired keys behave as absent.
    Implementations raise :class:`~deployflow.errors.PersistenceError` when
    the underlying engine fails.
    """

    async def connect(self) -> None:
        """Open connection to the engine (no-op by default)."""
        pass

    async def close(self) -> None:
        """Release engine resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the live value stored under ``key`` or ``None``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """Unconditionally store ``value`` and (re)start its TTL."""
        raise NotImplementedError

    @abc.abstractmethod
    async def compare_and_swap(
        self, key: str, expected: Optional[str], value: str, ttl: int
    ) -> bool:
        """Store ``value`` only if the live value still equals ``expected``.

        ``expected=None`` means the key must be absent (or expired).
        Returns ``True`` when the write happened.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove ``key``; return ``True`` if a live value was removed."""
        raise NotImplementedError

    @abc.abstractmethod
    async def scan(self, prefix: str) -> list[str]:
        """Return the live keys starting with ``prefix``."""
        raise NotImplementedError
