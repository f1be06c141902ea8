"""Append-only audit trail of node-state changes."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from .contracts import Identity
from .persistence.models import AuditRecord, EventType, NodeStatus, WorkflowInstance


class AuditLog:
    """Collects the records produced by a single engine call.

    Sequence numbers come from the instance itself so they stay strictly
    increasing per instance and are persisted in the same write as the state
    they describe.
    """

    def __init__(self, instance: WorkflowInstance) -> None:
        self._instance = instance
        self.records: List[AuditRecord] = []

    def record(
        self,
        node_id: str,
        event: EventType,
        from_status: Optional[NodeStatus],
        to_status: Optional[NodeStatus],
        timestamp: datetime,
        actor: Optional[Identity] = None,
        comments: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        self._instance.audit_sequence += 1
        entry = AuditRecord(
            instance_id=self._instance.id,
            sequence=self._instance.audit_sequence,
            node_id=node_id,
            event=event,
            from_status=from_status,
            to_status=to_status,
            actor=actor.user_id if actor else None,
            actor_role=actor.role if actor else None,
            comments=comments,
            timestamp=timestamp,
            payload=payload or {},
        )
        self.records.append(entry)
        return entry

    def __len__(self) -> int:
        return len(self.records)
