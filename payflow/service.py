"""Public entry points of the approval workflow engine.

:class:`WorkflowService` owns the load, mutate and persist cycle around the
:class:`~payflow.engine.TransitionEngine`. Writes to one instance are
serialized through the repository's optimistic version check; a losing
writer retries once against a fresh copy and the decision stays pinned to
the step the actor originally saw, so a decision can never be applied to a
later step by accident.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, List, Optional, TypeVar

from .config import PayflowConfig, load_config
from .contracts import (
    Decision,
    Identity,
    NodeType,
    PaymentRequest,
    WorkflowDefinition,
    utc_now,
)
from .directory import PaymentGateway, PaymentRequestStore, UserDirectory
from .emitter import EventEmitter
from .engine import Transition, TransitionEngine
from .errors import (
    ConcurrentModificationError,
    DefinitionNotFoundError,
    GraphInvalidError,
    InstanceNotFoundError,
    NotAuthorizedError,
    PaymentRequestNotFoundError,
    UserNotFoundError,
    WorkflowAlreadyRunningError,
)
from .events import DomainEvent
from .persistence import (
    AuditRecord,
    EventType,
    InstanceStatus,
    NodeStatus,
    WorkflowInstance,
    WorkflowRepository,
    get_repository,
)
from .security import PolicyEngine, RolePolicyEngine
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_REQUEST_STATUS = {
    InstanceStatus.PENDING: "PENDING",
    InstanceStatus.RUNNING: "PENDING",
    InstanceStatus.APPROVED: "APPROVED",
    InstanceStatus.COMPLETED: "APPROVED",
    InstanceStatus.REJECTED: "REJECTED",
    InstanceStatus.CANCELLED: "CANCELLED",
    InstanceStatus.FAILED: "FAILED",
}


class WorkflowService:
    """Service facade exposed to the rest of the payments platform."""

    def __init__(
        self,
        directory: UserDirectory,
        payment_requests: PaymentRequestStore,
        repository: WorkflowRepository | None = None,
        emitter: EventEmitter | None = None,
        policy: PolicyEngine | None = None,
        gateway: PaymentGateway | None = None,
        config: PayflowConfig | None = None,
        engine: TransitionEngine | None = None,
    ) -> None:
        self._config = config or load_config()
        self._directory = directory
        self._payment_requests = payment_requests
        self._repository = repository or get_repository(config=self._config)
        self._emitter = emitter
        self._policy = policy or RolePolicyEngine(self._config.policy.cancel_roles)
        self._engine = engine or TransitionEngine(gateway=gateway)
        self._start_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Exposed operations
    async def start_workflow(self, payment_request_id: str) -> WorkflowInstance:
        """Instantiate the organization's workflow for a payment request."""
        payment_request = await self._payment_requests.get_payment_request(
            payment_request_id
        )
        if payment_request is None:
            raise PaymentRequestNotFoundError(
                f"payment request {payment_request_id} not found"
            )
        definition = await self._io(
            self._repository.get_active_definition(payment_request.org_id)
        )
        if definition is None:
            raise DefinitionNotFoundError(
                f"no workflow definition for organization {payment_request.org_id}"
            )

        # one live instance per payment request; a new one only after the
        # previous instance reached a terminal status
        async with self._start_lock:
            live = await self._live_instance(payment_request)
            if live is not None:
                logger.warning(
                    f"Payment request {payment_request.id} already has live instance {live.id}"
                )
                raise WorkflowAlreadyRunningError(live.id)
            try:
                transition = await self._engine.start(definition, payment_request)
            except GraphInvalidError as exc:
                logger.error(
                    f"Definition {definition.id} v{definition.version} of organization "
                    f"{definition.org_id} is invalid: {exc}"
                )
                raise
            await self._io(
                self._repository.create_instance(transition.instance, transition.records)
            )
        return await self._after_write(transition, definition, payment_request)

    async def submit_decision(
        self,
        instance_id: str,
        actor_id: str,
        approved: bool,
        comments: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> WorkflowInstance:
        """Approve or reject the current step on behalf of ``actor_id``."""
        actor = await self._get_actor(actor_id)
        decision = Decision(
            actor=actor, approved=approved, comments=comments, node_id=node_id
        )

        attempt = 0
        while True:
            instance = await self._load_instance(instance_id)
            if decision.node_id is None and instance.current_node_id:
                decision = decision.model_copy(
                    update={"node_id": instance.current_node_id}
                )
            try:
                return await self._decide(instance, decision)
            except ConcurrentModificationError:
                if attempt >= self._config.engine.conflict_retries:
                    raise
                attempt += 1
                logger.info(
                    f"Conflict applying decision to {instance_id}; retry {attempt}"
                )
                await schedule_retry(attempt, base=self._config.engine.retry_backoff_base)

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        """Read-only projection for status pages."""
        return await self._load_instance(instance_id)

    async def get_history(self, instance_id: str) -> List[AuditRecord]:
        await self._load_instance(instance_id)
        return await self._io(self._repository.list_audit_records(instance_id))

    async def cancel_workflow(
        self, instance_id: str, actor_id: str, reason: Optional[str] = None
    ) -> None:
        """Cancel a running workflow; restricted to administrative roles."""
        actor = await self._get_actor(actor_id)
        attempt = 0
        while True:
            instance = await self._load_instance(instance_id)
            if not await self._policy.evaluate(actor, "cancel", instance):
                logger.warning(
                    f"User {actor.user_id} ({actor.role}) may not cancel {instance_id}"
                )
                raise NotAuthorizedError("not_an_administrator")
            expected = instance.version
            transition = self._engine.cancel(instance, actor, reason)
            try:
                await self._io(
                    self._repository.save_instance(
                        instance, expected, transition.records
                    )
                )
            except ConcurrentModificationError:
                if attempt >= self._config.engine.conflict_retries:
                    raise
                attempt += 1
                await schedule_retry(attempt, base=self._config.engine.retry_backoff_base)
                continue
            definition = await self._io(
                self._repository.get_definition(
                    instance.definition_id, instance.definition_version
                )
            )
            payment_request = await self._payment_requests.get_payment_request(
                instance.payment_request_id
            )
            await self._after_write(transition, definition, payment_request)
            return

    async def send_reminders(self, now: Optional[datetime] = None) -> int:
        """Emit ApprovalReminder events for steps waiting past their timeout.

        Meant to be called from an external scheduler. The reminder counter
        only moves once the transport accepted the event, so a reminder that
        could not be published is retried by the next sweep.
        """
        now = now or utc_now()
        sent = 0
        instances = await self._io(
            self._repository.list_instances(status=InstanceStatus.RUNNING)
        )
        for instance in instances:
            definition = await self._io(
                self._repository.get_definition(
                    instance.definition_id, instance.definition_version
                )
            )
            if definition is None:
                continue
            expected = instance.version
            reminder = self._engine.remind(instance, definition, now)
            if reminder is None:
                continue
            if self._emitter is not None:
                try:
                    await self._emitter.emit(
                        DomainEvent(
                            type=EventType.APPROVAL_REMINDER,
                            instance_id=instance.id,
                            node_id=reminder["node_id"],
                            from_status=NodeStatus.RUNNING,
                            timestamp=now,
                            payload=reminder,
                        )
                    )
                except Exception as e:
                    logger.error(
                        f"Deferred reminder for {instance.id} at {reminder['node_id']}: {e}"
                    )
                    continue
            try:
                await self._io(self._repository.save_instance(instance, expected, []))
            except ConcurrentModificationError:
                logger.info(f"Instance {instance.id} moved on; reminder count not saved")
                continue
            sent += 1
        logger.info(f"Sent {sent} approval reminders")
        return sent

    # ------------------------------------------------------------------
    async def _decide(
        self, instance: WorkflowInstance, decision: Decision
    ) -> WorkflowInstance:
        definition = await self._io(
            self._repository.get_definition(
                instance.definition_id, instance.definition_version
            )
        )
        if definition is None:
            raise DefinitionNotFoundError(
                f"definition {instance.definition_id} v{instance.definition_version} is missing"
            )
        payment_request = await self._payment_requests.get_payment_request(
            instance.payment_request_id
        )
        expected = instance.version
        try:
            transition = await self._engine.apply(
                instance, definition, decision, payment_request
            )
        except NotAuthorizedError as exc:
            logger.warning(
                f"User {decision.actor.user_id} not eligible for {instance.current_node_id} "
                f"of {instance.id}: {exc.reason}"
            )
            raise
        await self._io(
            self._repository.save_instance(instance, expected, transition.records)
        )
        return await self._after_write(transition, definition, payment_request)

    async def _after_write(
        self,
        transition: Transition,
        definition: WorkflowDefinition | None,
        payment_request: PaymentRequest | None,
    ) -> WorkflowInstance:
        instance = transition.instance
        if payment_request is not None:
            await self._mirror(instance, definition, payment_request)
        if self._emitter is not None:
            # state is already committed; a broker outage must not make the
            # caller retry the decision, the outbox redelivers later
            try:
                await self._emitter.flush(instance.id)
            except Exception as e:
                logger.error(f"Deferred event publication for {instance.id}: {e}")
        if transition.error is not None:
            raise transition.error
        return instance

    async def _mirror(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition | None,
        payment_request: PaymentRequest,
    ) -> None:
        """Keep the legacy fields on the payment request in step."""
        changes = {"status": _REQUEST_STATUS[instance.status]}
        if definition is not None:
            if instance.status == InstanceStatus.COMPLETED and any(
                n.type == NodeType.PAYMENT
                and instance.node_states[n.id].status == NodeStatus.COMPLETED
                for n in definition.nodes
            ):
                changes["status"] = "PAID"
            level = 0
            for node in definition.approval_nodes():
                state = instance.node_states.get(node.id)
                if state is not None and state.status != NodeStatus.PENDING:
                    level = max(level, node.data.step_order)
            changes["current_approval_level"] = level
        await self._payment_requests.update_payment_request(
            payment_request.id, **changes
        )

    async def _live_instance(
        self, payment_request: PaymentRequest
    ) -> WorkflowInstance | None:
        instances = await self._io(
            self._repository.list_instances(org_id=payment_request.org_id)
        )
        for instance in instances:
            if instance.payment_request_id == payment_request.id and not instance.is_terminal:
                return instance
        return None

    async def _get_actor(self, actor_id: str) -> Identity:
        actor = await self._directory.get_user(actor_id)
        if actor is None:
            raise UserNotFoundError(f"user {actor_id} not found")
        return actor

    async def _load_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self._io(self._repository.get_instance(instance_id))
        if instance is None:
            raise InstanceNotFoundError(f"instance {instance_id} not found")
        return instance

    async def _io(self, call: Awaitable[T]) -> T:
        """Bound one persistence round-trip by the configured deadline."""
        return await asyncio.wait_for(
            call, timeout=self._config.engine.persistence_timeout
        )
