"""Event consumption for notification and dashboard collaborators."""

from __future__ import annotations

import logging
from collections import OrderedDict, defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from .constants import DEFAULT_EVENT_TOPIC
from .events import DomainEvent
from .persistence.models import EventType
from .transports import BaseTransport

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], Awaitable[None]]


class IdempotentHandler:
    """Wrap a handler so redelivered events are processed once.

    An event only counts as seen after the wrapped handler succeeded. Only
    the ``max_keys`` most recently seen keys are remembered; a redelivery
    older than that window runs the handler again.
    """

    def __init__(self, handler: Handler, max_keys: int = 10_000) -> None:
        self._handler = handler
        self._max_keys = max_keys
        self._seen: "OrderedDict[Tuple[str, str, str], None]" = OrderedDict()

    async def __call__(self, event: DomainEvent) -> None:
        key = event.idempotency_key
        if key in self._seen:
            self._seen.move_to_end(key)
            logger.debug(f"Skipping duplicate event {key}")
            return
        await self._handler(event)
        self._seen[key] = None
        if len(self._seen) > self._max_keys:
            self._seen.popitem(last=False)


class EventConsumer:
    """Dispatches workflow events from a transport to registered handlers."""

    def __init__(self, transport: BaseTransport, topic: str = DEFAULT_EVENT_TOPIC) -> None:
        self._transport = transport
        self._topic = topic
        self._handlers: Dict[Optional[EventType], List[Handler]] = defaultdict(list)

    def on(self, event_type: Optional[EventType], handler: Handler) -> None:
        """Register ``handler`` for ``event_type``; ``None`` receives every event."""
        self._handlers[event_type].append(handler)

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Consume events until ``lifespan`` seconds elapse (forever if None)."""
        async for raw_message, event in self._transport.subscribe(
            self._topic, lifespan=lifespan
        ):
            try:
                await self.dispatch(event)
            except Exception:
                logger.exception(
                    f"Handler failed for {event.type.value} on instance {event.instance_id}; requeueing"
                )
                await self._transport.nack(raw_message, requeue=True)
                continue
            await self._transport.ack(raw_message)

    async def dispatch(self, event: DomainEvent) -> None:
        for handler in self._handlers.get(event.type, []) + self._handlers.get(None, []):
            await handler(event)
