"""Domain events published to notification and dashboard consumers."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field

from .contracts import utc_now
from .persistence.models import AuditRecord, EventType, NodeStatus


class DomainEvent(BaseModel):
    """Envelope exchanged over the transport, one per audit record."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: EventType
    instance_id: str
    node_id: str
    sequence: Optional[int] = None
    from_status: Optional[NodeStatus] = None
    to_status: Optional[NodeStatus] = None
    actor: Optional[str] = None
    comments: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    @classmethod
    def from_record(cls, record: AuditRecord) -> "DomainEvent":
        return cls(
            event_id=f"{record.instance_id}:{record.sequence}",
            type=record.event,
            instance_id=record.instance_id,
            node_id=record.node_id,
            sequence=record.sequence,
            from_status=record.from_status,
            to_status=record.to_status,
            actor=record.actor,
            comments=record.comments,
            timestamp=record.timestamp,
            payload=dict(record.payload),
        )

    @property
    def idempotency_key(self) -> Tuple[str, str, str]:
        """Key consumers deduplicate redeliveries on."""
        if self.to_status is not None:
            marker = self.to_status.value
        else:
            marker = f"{self.type.value}#{self.payload.get('reminder', 0)}"
        return (self.instance_id, self.node_id, marker)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DomainEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
