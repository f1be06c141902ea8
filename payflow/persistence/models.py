"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import utc_now


class NodeStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class InstanceStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset(
    {
        InstanceStatus.COMPLETED,
        InstanceStatus.REJECTED,
        InstanceStatus.CANCELLED,
        InstanceStatus.FAILED,
    }
)


class EventType(str, Enum):
    WORKFLOW_STARTED = "WorkflowStarted"
    STEP_STARTED = "StepStarted"
    STEP_SKIPPED = "StepSkipped"
    STEP_COMPLETED = "StepCompleted"
    WORKFLOW_REJECTED = "WorkflowRejected"
    WORKFLOW_FAILED = "WorkflowFailed"
    WORKFLOW_COMPLETED = "WorkflowCompleted"
    WORKFLOW_CANCELLED = "WorkflowCancelled"
    APPROVAL_REMINDER = "ApprovalReminder"


class NodeState(BaseModel):
    """Progress of a single node within an instance."""

    status: NodeStatus = NodeStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    acted_by: Optional[str] = None
    comments: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class WorkflowInstance(BaseModel):
    """One execution of a workflow definition for one payment request."""

    id: str
    definition_id: str
    definition_version: int = 1
    payment_request_id: str
    org_id: str
    current_node_id: Optional[str] = None
    node_states: Dict[str, NodeState] = Field(default_factory=dict)
    status: InstanceStatus = InstanceStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    version: int = 0
    audit_sequence: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def running_nodes(self) -> List[str]:
        return [
            node_id
            for node_id, state in self.node_states.items()
            if state.status == NodeStatus.RUNNING
        ]

    def state_of(self, node_id: str) -> NodeState:
        return self.node_states.setdefault(node_id, NodeState())


class AuditRecord(BaseModel):
    """Immutable record of one node-state change."""

    model_config = ConfigDict(frozen=True)

    instance_id: str
    sequence: int
    node_id: str
    event: EventType
    from_status: Optional[NodeStatus] = None
    to_status: Optional[NodeStatus] = None
    actor: Optional[str] = None
    actor_role: Optional[str] = None
    comments: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> Tuple[str, int]:
        return (self.instance_id, self.sequence)
