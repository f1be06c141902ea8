"""In-process transport for tests, the CLI and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, List, Optional, Tuple

from ..events import DomainEvent
from .base import BaseTransport

# (topic, serialized event)
MemoryDelivery = Tuple[str, str]


class InMemoryTransport(BaseTransport[MemoryDelivery]):
    """Per-topic FIFO queues living in this process.

    Events are stored serialized so subscribers get the same round trip a
    real broker would give them. ``published`` keeps every accepted event in
    order for assertions.
    """

    def __init__(self, poll_interval: float = 0.01) -> None:
        self._queues: Dict[str, Deque[MemoryDelivery]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval
        self.published: List[DomainEvent] = []

    async def publish(self, topic: str, event: DomainEvent) -> None:
        async with self._lock:
            self._queues[topic].append((topic, event.to_json()))
            self.published.append(event)

    async def _pop(self, topic: str) -> Optional[MemoryDelivery]:
        async with self._lock:
            queue = self._queues[topic]
            return queue.popleft() if queue else None

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[MemoryDelivery, DomainEvent]]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None

        while deadline is None or loop.time() < deadline:
            delivery = await self._pop(topic)
            if delivery is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield delivery, DomainEvent.from_json(delivery[1])

    async def ack(self, raw_message: MemoryDelivery) -> None:
        return None

    async def nack(self, raw_message: MemoryDelivery, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                # back at the head so later events for the instance stay behind it
                self._queues[raw_message[0]].appendleft(raw_message)
