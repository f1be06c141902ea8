"""Publishes persisted audit records as domain events."""

from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from .constants import DEFAULT_EVENT_TOPIC
from .events import DomainEvent
from .persistence import WorkflowRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class EventEmitter:
    """Relay from the repository's audit outbox to a transport.

    Records are marked published only after the transport accepted them, so
    a crash or broker outage leads to redelivery on the next flush rather
    than loss. Delivery is therefore at-least-once and consumers must
    deduplicate on :attr:`DomainEvent.idempotency_key`.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        topic: str = DEFAULT_EVENT_TOPIC,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._topic = topic

    @property
    def topic(self) -> str:
        return self._topic

    async def flush(self, instance_id: Optional[str] = None, limit: int = 500) -> int:
        """Publish pending records in sequence order; return how many went out."""
        records = await self._repository.list_unpublished_records(
            instance_id=instance_id, limit=limit
        )
        sent: List[Tuple[str, int]] = []
        failed_instances: set[str] = set()
        for record in records:
            # keep per-instance order: once one record fails, hold the rest back
            if record.instance_id in failed_instances:
                continue
            try:
                await self._transport.publish(self._topic, DomainEvent.from_record(record))
            except Exception as e:
                logger.error(
                    f"Failed to publish {record.event.value} #{record.sequence} "
                    f"for instance {record.instance_id}: {e}. Will retry on next flush."
                )
                failed_instances.add(record.instance_id)
                continue
            sent.append(record.key)

        if sent:
            await self._repository.mark_records_published(sent)
            logger.debug(f"Published {len(sent)} workflow events to {self._topic}")
        return len(sent)

    async def emit(self, event: DomainEvent) -> None:
        """Publish an event that has no audit record behind it (reminders)."""
        await self._transport.publish(self._topic, event)
