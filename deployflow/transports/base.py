"""Broker abstraction shared by the dispatcher, workers and result channel."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, Type, TypeVar

from ..contracts import Envelope

RawMessageT = TypeVar("RawMessageT")
EnvelopeT = TypeVar("EnvelopeT", bound=Envelope)


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Topic-addressed queue of :class:`~deployflow.contracts.Envelope` messages.

    ``RawMessageT`` is whatever the broker needs back to acknowledge or
    requeue a delivery.
    """

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: Envelope) -> None:
        """Enqueue ``message`` on ``topic``."""
        raise NotImplementedError

    @abc.abstractmethod
    def subscribe(
        self,
        topic: str,
        model: Type[EnvelopeT],
        lifespan: Optional[float] = None,
    ) -> AsyncIterator[Tuple[RawMessageT, EnvelopeT]]:
        """Yield ``(raw, decoded)`` pairs from ``topic``.

        Args:
            topic: Queue to consume.
            model: Envelope class the bodies on this topic decode to.
            lifespan: Seconds to keep consuming; ``None`` means forever.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Hand a delivery back; brokers without requeue just acknowledge it."""
        await self.ack(raw_message)
