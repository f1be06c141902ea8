"""Shared builders and fixtures for payflow tests."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from payflow.config import EngineConfig, PayflowConfig
from payflow.contracts import (
    ApprovalNode,
    Edge,
    EndNode,
    Identity,
    PaymentRequest,
    StartNode,
    WorkflowDefinition,
)
from payflow.directory import (
    InMemoryPaymentRequestStore,
    InMemoryUserDirectory,
    RecordingPaymentGateway,
)
from payflow.emitter import EventEmitter
from payflow.persistence import InMemoryWorkflowRepository, WorkflowRepository
from payflow.service import WorkflowService
from payflow.transports import InMemoryTransport

ORG = "org-acme"

ADMIN = Identity(user_id="u-admin", role="ORG_ADMIN", org_id=ORG, name="Asha")
FINANCE = Identity(user_id="u-finance", role="ORG_FINANCE", org_id=ORG, name="Farid")
MEMBER = Identity(user_id="u-member", role="ORG_MEMBER", org_id=ORG, name="Mei")
AUDITOR = Identity(user_id="u-auditor", role="ORG_AUDITOR", org_id=ORG)
OTHER_ORG_ADMIN = Identity(user_id="u-other", role="ORG_ADMIN", org_id="org-other")
SUPER = Identity(user_id="u-super", role="SUPER_ADMIN")


def approval(node_id: str, order: int, value: str, approver_type: str = "ROLE", **extra):
    return ApprovalNode(
        id=node_id,
        data={
            "label": f"Step {order}",
            "approver_type": approver_type,
            "approver_value": value,
            "step_order": order,
            **extra,
        },
    )


def chain(*node_ids: str) -> list[Edge]:
    return [Edge(source=a, target=b) for a, b in zip(node_ids, node_ids[1:])]


def linear_definition(definition_id: str = "wf-acme", org_id: str = ORG) -> WorkflowDefinition:
    """START -> approval-1 (ORG_ADMIN) -> approval-2 (ORG_FINANCE) -> END."""
    return WorkflowDefinition(
        id=definition_id,
        org_id=org_id,
        name="Two level approval",
        nodes=[
            StartNode(id="start"),
            approval("approval-1", 1, "ORG_ADMIN"),
            approval("approval-2", 2, "ORG_FINANCE"),
            EndNode(id="end-node"),
        ],
        edges=chain("start", "approval-1", "approval-2", "end-node"),
    )


def payment_request(request_id: str = "pr-1", amount: float = 5000.0, **extra) -> PaymentRequest:
    return PaymentRequest(
        id=request_id,
        org_id=extra.pop("org_id", ORG),
        amount=amount,
        currency="INR",
        requested_by=MEMBER.user_id,
        title="Laptop purchase",
        **extra,
    )


@dataclass
class Harness:
    service: WorkflowService
    repository: WorkflowRepository
    transport: InMemoryTransport
    payment_requests: InMemoryPaymentRequestStore
    directory: InMemoryUserDirectory
    gateway: RecordingPaymentGateway

    async def install(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await self.repository.save_definition(definition)


def build_harness(repository: WorkflowRepository | None = None) -> Harness:
    repository = repository or InMemoryWorkflowRepository()
    transport = InMemoryTransport()
    directory = InMemoryUserDirectory([ADMIN, FINANCE, MEMBER, AUDITOR, OTHER_ORG_ADMIN, SUPER])
    payment_requests = InMemoryPaymentRequestStore([payment_request()])
    gateway = RecordingPaymentGateway()
    config = PayflowConfig(engine=EngineConfig(retry_backoff_base=0.0))
    service = WorkflowService(
        directory=directory,
        payment_requests=payment_requests,
        repository=repository,
        emitter=EventEmitter(repository, transport, config.transport.topic),
        gateway=gateway,
        config=config,
    )
    return Harness(service, repository, transport, payment_requests, directory, gateway)


@pytest.fixture
def harness() -> Harness:
    return build_harness()
