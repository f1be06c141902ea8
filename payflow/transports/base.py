"""Contract every event transport implements."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..events import DomainEvent

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Broker connection carrying serialized :class:`DomainEvent` envelopes.

    ``RawMessageT`` is whatever the broker needs to acknowledge or requeue a
    delivery. Consumers never look inside it; they only hand it back to
    :meth:`ack` or :meth:`nack`.
    """

    async def connect(self) -> None:
        return None

    async def disconnect(self) -> None:
        return None

    @abc.abstractmethod
    async def publish(self, topic: str, event: DomainEvent) -> None:
        """Hand ``event`` to the broker. Raising means it was not accepted."""

    @abc.abstractmethod
    def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, DomainEvent]]:
        """Iterate deliveries on ``topic`` for ``lifespan`` seconds, or forever."""

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Confirm a delivery was handled."""

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Reject a delivery; brokers without redelivery simply drop it."""
        await self.ack(raw_message)
