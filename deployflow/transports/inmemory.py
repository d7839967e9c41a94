"""Single-process transport used by tests and local runs."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple, Type

from ..contracts import Envelope
from .base import BaseTransport, EnvelopeT

# (topic, serialized body, envelope as published)
RawInMemoryMessage = Tuple[str, str, Envelope]

POLL_INTERVAL = 0.01


class InMemoryTransport(BaseTransport[RawInMemoryMessage]):
    """One FIFO deque per topic, guarded by an asyncio lock.

    Messages are kept as published; tests inspect ``_queues`` directly.
    """

    def __init__(self) -> None:
        self._queues: Dict[str, Deque[RawInMemoryMessage]] = defaultdict(deque)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: Envelope) -> None:
        async with self._lock:
            self._queues[topic].append((topic, message.to_json(), message))

    async def _pop(self, topic: str) -> Optional[RawInMemoryMessage]:
        async with self._lock:
            queue = self._queues[topic]
            return queue.popleft() if queue else None

    async def subscribe(
        self,
        topic: str,
        model: Type[EnvelopeT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawInMemoryMessage, EnvelopeT]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            raw = await self._pop(topic)
            if raw is None:
                await asyncio.sleep(POLL_INTERVAL)
                continue
            message = raw[2]
            if not isinstance(message, model):
                message = model.from_json(raw[1])
            yield raw, message

    def pending(self, topic: str) -> int:
        """Number of messages waiting on ``topic``."""
        return len(self._queues[topic])

    async def ack(self, raw_message: RawInMemoryMessage) -> None:
        pass

    async def nack(self, raw_message: RawInMemoryMessage, requeue: bool = True) -> None:
        """Requeue at the back of the topic so other messages go first."""
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
