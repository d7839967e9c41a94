"""Redis list transport.

Each topic is a list named ``deployflow:<topic>``. Producers ``LPUSH`` and
consumers ``BRPOP``, so a list behaves as a FIFO queue shared by every
process pointed at the same Redis database. Delivery is at most once: a
message popped by a consumer that then dies is lost, and the orchestrator's
retry operation is the recovery path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Tuple, Type

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..constants import TRANSPORT_KEY_PREFIX
from ..contracts import Envelope
from .base import BaseTransport, EnvelopeT

if TYPE_CHECKING:
    from ..config import RedisConfig

logger = logging.getLogger(__name__)

# (list key, serialized body)
RawRedisMessage = Tuple[str, str]

# Upper bound on one BRPOP so a lifespan is honoured promptly.
POLL_TIMEOUT = 1.0


class RedisTransport(BaseTransport[RawRedisMessage]):
    """Queue tasks and step events in Redis lists."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.url = url
        self._redis: Optional[Any] = None

    @classmethod
    def from_config(cls, config: "RedisConfig") -> "RedisTransport":
        return cls(
            host=config.host,
            port=config.port,
            db=config.db,
            password=config.password,
            url=config.url,
        )

    @staticmethod
    def queue_name(topic: str) -> str:
        return f"{TRANSPORT_KEY_PREFIX}{topic}"

    async def connect(self) -> None:
        if self.url:
            client = redis.from_url(self.url, decode_responses=True)
        else:
            client = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await client.ping()
        self._redis = client
        logger.info(f"Connected to Redis transport at {self.url or f'{self.host}:{self.port}/{self.db}'}")

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def publish(self, topic: str, message: Envelope) -> None:
        client = await self._client()
        await client.lpush(self.queue_name(topic), message.to_json())

    async def subscribe(
        self,
        topic: str,
        model: Type[EnvelopeT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawRedisMessage, EnvelopeT]]:
        """Pop messages from the topic's list until ``lifespan`` elapses.

        Bodies that do not decode as ``model`` are logged and dropped.
        """
        client = await self._client()
        queue = self.queue_name(topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while True:
            timeout = POLL_TIMEOUT
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                timeout = min(timeout, remaining)

            popped = await client.brpop(queue, timeout=timeout)
            if not popped:
                continue

            _, body = popped
            try:
                message = model.from_json(body)
            except ValidationError as e:
                logger.error(f"Dropping unreadable message on {queue}: {e}")
                continue
            yield (queue, body), message

    async def ack(self, raw_message: RawRedisMessage) -> None:
        """Nothing to do: BRPOP already removed the message."""

    async def nack(self, raw_message: RawRedisMessage, requeue: bool = True) -> None:
        """Push the message back behind everything already queued."""
        if not requeue:
            return
        queue, body = raw_message
        client = await self._client()
        await client.lpush(queue, body)
