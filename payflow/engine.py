"""Transition engine: the only code that mutates workflow instance state."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .audit import AuditLog
from .conditions import all_hold, build_context, select_edge
from .contracts import (
    Decision,
    Edge,
    Identity,
    Node,
    NodeType,
    PaymentRequest,
    WorkflowDefinition,
    utc_now,
)
from .directory import PaymentGateway, PaymentResult
from .errors import (
    ConcurrentModificationError,
    GraphInvalidError,
    InstanceTerminalError,
    NoCurrentNodeError,
    NotAuthorizedError,
)
from .gate import is_eligible
from .persistence.models import (
    AuditRecord,
    EventType,
    InstanceStatus,
    NodeState,
    NodeStatus,
    WorkflowInstance,
)

logger = logging.getLogger(__name__)


@dataclass
class Transition:
    """Outcome of one engine call, ready to be persisted atomically.

    ``error`` is set when the definition turned out to be broken mid-walk:
    the instance has already been halted in FAILED and must still be saved
    before the error is raised to the caller.
    """

    instance: WorkflowInstance
    records: List[AuditRecord] = field(default_factory=list)
    error: Optional[GraphInvalidError] = None


class TransitionEngine:
    """State machine driving a payment request through its approval graph."""

    def __init__(
        self,
        gateway: PaymentGateway | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gateway = gateway
        self._clock = clock

    # ------------------------------------------------------------------
    async def start(
        self,
        definition: WorkflowDefinition,
        payment_request: PaymentRequest,
        instance_id: Optional[str] = None,
    ) -> Transition:
        """Create an instance and walk it to the first approval step or END."""
        definition.validate_graph()
        now = self._clock()
        instance = WorkflowInstance(
            id=instance_id or f"wfi-{uuid.uuid4()}",
            definition_id=definition.id,
            definition_version=definition.version,
            payment_request_id=payment_request.id,
            org_id=payment_request.org_id,
            node_states={node.id: NodeState() for node in definition.nodes},
            created_at=now,
            metadata={
                "requester_id": payment_request.requested_by,
                "amount": payment_request.amount,
                "currency": payment_request.currency,
                "category": payment_request.category,
            },
        )
        log = AuditLog(instance)

        start = definition.start_node
        state = instance.state_of(start.id)
        state.status = NodeStatus.COMPLETED
        state.started_at = state.completed_at = now
        state.result = {"message": "Workflow started"}
        log.record(
            start.id,
            EventType.WORKFLOW_STARTED,
            NodeStatus.PENDING,
            NodeStatus.COMPLETED,
            now,
            payload={
                "payment_request_id": payment_request.id,
                "definition_id": definition.id,
                "definition_version": definition.version,
            },
        )
        instance.status = InstanceStatus.RUNNING
        instance.current_node_id = start.id

        context = build_context(payment_request, instance.metadata)
        error = await self._advance(
            instance, definition, start, context, log, payment_request
        )
        logger.info(
            f"Started workflow {instance.id} for payment request {payment_request.id}: "
            f"{instance.status.value} at {instance.current_node_id}"
        )
        return Transition(instance, log.records, error)

    async def apply(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        decision: Decision,
        payment_request: PaymentRequest | None = None,
    ) -> Transition:
        """Apply an approve/reject decision to the instance's current step.

        Every precondition is checked before the first mutation, so a failed
        call leaves ``instance`` untouched.
        """
        if instance.is_terminal:
            raise InstanceTerminalError(
                f"instance {instance.id} is {instance.status.value}"
            )
        if not instance.current_node_id or not definition.has_node(
            instance.current_node_id
        ):
            raise NoCurrentNodeError(f"instance {instance.id} has no current node")

        node = definition.node(instance.current_node_id)
        state = instance.state_of(node.id)
        if node.type != NodeType.APPROVAL or state.status not in (
            NodeStatus.PENDING,
            NodeStatus.RUNNING,
        ):
            raise NoCurrentNodeError(
                f"instance {instance.id} is not waiting on an approval step"
            )
        if decision.node_id is not None and decision.node_id != node.id:
            raise ConcurrentModificationError(
                f"decision targets {decision.node_id!r} but instance {instance.id} "
                f"is at {node.id!r}"
            )

        gate = is_eligible(node, decision.actor, instance.org_id)
        if not gate.eligible:
            raise NotAuthorizedError(gate.reason)

        now = self._clock()
        log = AuditLog(instance)
        actor = decision.actor

        if state.status == NodeStatus.PENDING:
            self._set(state, log, node, NodeStatus.RUNNING, EventType.STEP_STARTED, now)
            state.started_at = now

        state.acted_by = actor.user_id
        state.comments = decision.comments
        state.completed_at = now
        state.result = {
            "approved": decision.approved,
            "decided_at": decision.timestamp.isoformat(),
        }

        if not decision.approved:
            self._set(
                state,
                log,
                node,
                NodeStatus.FAILED,
                EventType.WORKFLOW_REJECTED,
                now,
                actor=actor,
                comments=decision.comments,
                payload={"step_order": node.data.step_order},
            )
            instance.status = InstanceStatus.REJECTED
            instance.completed_at = now
            logger.info(f"Workflow {instance.id} rejected at {node.id} by {actor.user_id}")
            return Transition(instance, log.records)

        self._set(
            state,
            log,
            node,
            NodeStatus.COMPLETED,
            EventType.STEP_COMPLETED,
            now,
            actor=actor,
            comments=decision.comments,
            payload={"node_type": node.type, "step_order": node.data.step_order},
        )
        logger.info(f"Step {node.id} of workflow {instance.id} approved by {actor.user_id}")

        context = build_context(payment_request, instance.metadata)
        error = await self._advance(
            instance, definition, node, context, log, payment_request
        )
        return Transition(instance, log.records, error)

    def cancel(
        self, instance: WorkflowInstance, actor: Identity, reason: Optional[str] = None
    ) -> Transition:
        """Stop a non-terminal instance. Authorization is the caller's job."""
        if instance.is_terminal:
            raise InstanceTerminalError(
                f"instance {instance.id} is {instance.status.value}"
            )
        now = self._clock()
        log = AuditLog(instance)
        payload = {"reason": reason} if reason else {}
        running = instance.running_nodes()
        for node_id in running:
            state = instance.node_states[node_id]
            previous = state.status
            state.status = NodeStatus.SKIPPED
            state.completed_at = now
            log.record(
                node_id,
                EventType.WORKFLOW_CANCELLED,
                previous,
                NodeStatus.SKIPPED,
                now,
                actor=actor,
                comments=reason,
                payload=payload,
            )
        if not running:
            log.record(
                instance.current_node_id or "",
                EventType.WORKFLOW_CANCELLED,
                None,
                None,
                now,
                actor=actor,
                comments=reason,
                payload=payload,
            )
        instance.status = InstanceStatus.CANCELLED
        instance.completed_at = now
        logger.info(f"Workflow {instance.id} cancelled by {actor.user_id}")
        return Transition(instance, log.records)

    def remind(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        now: Optional[datetime] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return reminder details if the current approval step is overdue.

        Reminders are notifications, not state changes: nothing is audited,
        only the reminder counter in ``instance.metadata`` moves.
        """
        if instance.is_terminal or not instance.current_node_id:
            return None
        if not definition.has_node(instance.current_node_id):
            return None
        node = definition.node(instance.current_node_id)
        state = instance.node_states.get(node.id)
        if (
            node.type != NodeType.APPROVAL
            or state is None
            or state.status != NodeStatus.RUNNING
            or state.started_at is None
        ):
            return None

        now = now or self._clock()
        reminders = instance.metadata.setdefault("reminders", {})
        sent = reminders.get(node.id, 0)
        period = timedelta(hours=node.data.timeout_hours)
        if now < state.started_at + period * (sent + 1):
            return None

        reminders[node.id] = sent + 1
        overdue = now - state.started_at
        return {
            "node_id": node.id,
            "reminder": sent + 1,
            "overdue_hours": round(overdue.total_seconds() / 3600, 2),
            "approver_type": node.data.approver_type.value,
            "approver_value": node.data.approver_value,
            "step_order": node.data.step_order,
        }

    # ------------------------------------------------------------------
    async def _advance(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        node: Node,
        context: Dict[str, Any],
        log: AuditLog,
        payment_request: PaymentRequest | None,
    ) -> Optional[GraphInvalidError]:
        """Walk forward from ``node`` until a human gate, END or a failure."""
        edge: Optional[Edge] = None
        for _ in range(len(definition.nodes) + 1):
            now = self._clock()
            try:
                edge = edge or select_edge(definition, node, context)
                nxt = definition.node(edge.target)
            except GraphInvalidError as exc:
                self._halt(instance, node, exc, log, now)
                return exc
            edge = None
            state = instance.state_of(nxt.id)
            instance.current_node_id = nxt.id

            if nxt.type == NodeType.END:
                state.started_at = state.completed_at = now
                self._set(
                    state, log, nxt, NodeStatus.COMPLETED, EventType.WORKFLOW_COMPLETED, now
                )
                state.result = {"message": "Workflow completed"}
                instance.status = InstanceStatus.COMPLETED
                instance.completed_at = now
                logger.info(f"Workflow {instance.id} completed")
                return None

            if nxt.type == NodeType.APPROVAL:
                if nxt.data.applies_when and not all_hold(nxt.data.applies_when, context):
                    self._set(
                        state,
                        log,
                        nxt,
                        NodeStatus.SKIPPED,
                        EventType.STEP_SKIPPED,
                        now,
                        payload={"reason": "conditions_not_met"},
                    )
                    state.completed_at = now
                    node = nxt
                    continue
                state.started_at = now
                self._set(
                    state,
                    log,
                    nxt,
                    NodeStatus.RUNNING,
                    EventType.STEP_STARTED,
                    now,
                    payload={
                        "label": nxt.data.label,
                        "approver_type": nxt.data.approver_type.value,
                        "approver_value": nxt.data.approver_value,
                        "step_order": nxt.data.step_order,
                    },
                )
                return None

            state.started_at = now
            self._set(state, log, nxt, NodeStatus.RUNNING, EventType.STEP_STARTED, now)

            if nxt.type == NodeType.CONDITION:
                try:
                    edge = select_edge(definition, nxt, context)
                except GraphInvalidError as exc:
                    self._halt(instance, nxt, exc, log, now)
                    return exc
                state.result = {"selected_edge": edge.target}
            elif nxt.type == NodeType.NOTIFY:
                state.result = {"recipients": list(nxt.data.recipients)}
            elif nxt.type == NodeType.PAYMENT:
                outcome = await self._release(payment_request, nxt)
                state.result = outcome.model_dump(exclude_none=True)
                if not outcome.success:
                    state.error = outcome.error
                    state.completed_at = now
                    self._set(
                        state,
                        log,
                        nxt,
                        NodeStatus.FAILED,
                        EventType.WORKFLOW_FAILED,
                        now,
                        payload={"error": outcome.error},
                    )
                    instance.status = InstanceStatus.FAILED
                    instance.completed_at = now
                    logger.error(
                        f"Payment release failed for workflow {instance.id}: {outcome.error}"
                    )
                    return None
            else:
                exc = GraphInvalidError(f"node {nxt.id!r} of type {nxt.type} cannot be entered")
                self._halt(instance, nxt, exc, log, now)
                return exc

            state.completed_at = now
            self._set(
                state,
                log,
                nxt,
                NodeStatus.COMPLETED,
                EventType.STEP_COMPLETED,
                now,
                payload={"node_type": nxt.type, **(state.result or {})},
            )
            node = nxt

        exc = GraphInvalidError(f"workflow {instance.id} did not reach a stopping point")
        self._halt(instance, node, exc, log, self._clock())
        return exc

    async def _release(
        self, payment_request: PaymentRequest | None, node: Node
    ) -> PaymentResult:
        if self._gateway is None:
            return PaymentResult(success=False, error="no payment gateway configured")
        return await self._gateway.release(payment_request, node.data)

    def _halt(
        self,
        instance: WorkflowInstance,
        node: Node,
        exc: GraphInvalidError,
        log: AuditLog,
        now: datetime,
    ) -> None:
        state = instance.state_of(node.id)
        state.error = str(exc)
        state.completed_at = now
        self._set(
            state,
            log,
            node,
            NodeStatus.FAILED,
            EventType.WORKFLOW_FAILED,
            now,
            payload={"problems": exc.problems},
        )
        instance.current_node_id = node.id
        instance.status = InstanceStatus.FAILED
        instance.completed_at = now
        logger.error(
            f"Workflow {instance.id} halted at {node.id}: definition "
            f"{instance.definition_id} v{instance.definition_version} is invalid: {exc}"
        )

    @staticmethod
    def _set(
        state: NodeState,
        log: AuditLog,
        node: Node,
        status: NodeStatus,
        event: EventType,
        now: datetime,
        actor: Optional[Identity] = None,
        comments: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        previous = state.status
        state.status = status
        log.record(
            node.id,
            event,
            previous,
            status,
            now,
            actor=actor,
            comments=comments,
            payload=payload,
        )
