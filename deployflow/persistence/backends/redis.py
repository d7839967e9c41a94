"""Redis implementation of the key-value backend."""

from __future__ import annotations

from typing import Any, Optional

try:
    import redis.asyncio as redis
    from redis.exceptions import RedisError, WatchError
except ImportError:
    redis = None

from ...errors import PersistenceError
from .base import KeyValueBackend


class RedisBackend(KeyValueBackend):
    """Redis-based backend; TTL uses native key expiry."""

    def __init__(
        self,
        url: Optional[str] = None,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisBackend")

        self.url = url
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.url:
            self._redis = redis.from_url(self.url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        try:
            await self._redis.ping()
        except RedisError as exc:
            raise PersistenceError(f"Redis unavailable: {exc}") from exc

    async def close(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    # ------------------------------------------------------------------
    async def get(self, key: str) -> Optional[str]:
        client = await self._client()
        try:
            return await client.get(key)
        except RedisError as exc:
            raise PersistenceError(f"Redis GET {key} failed: {exc}") from exc

    async def set(self, key: str, value: str, ttl: int) -> None:
        client = await self._client()
        try:
            await client.set(key, value, ex=ttl)
        except RedisError as exc:
            raise PersistenceError(f"Redis SET {key} failed: {exc}") from exc

    async def compare_and_swap(
        self, key: str, expected: Optional[str], value: str, ttl: int
    ) -> bool:
        client = await self._client()
        try:
            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                current = await pipe.get(key)
                if current != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, value, ex=ttl)
                await pipe.execute()
                return True
        except WatchError:
            return False
        except RedisError as exc:
            raise PersistenceError(f"Redis CAS on {key} failed: {exc}") from exc

    async def delete(self, key: str) -> bool:
        client = await self._client()
        try:
            return bool(await client.delete(key))
        except RedisError as exc:
            raise PersistenceError(f"Redis DEL {key} failed: {exc}") from exc

    async def scan(self, prefix: str) -> list[str]:
        client = await self._client()
        try:
            return sorted([key async for key in client.scan_iter(match=f"{prefix}*")])
        except RedisError as exc:
            raise PersistenceError(f"Redis SCAN {prefix}* failed: {exc}") from exc
