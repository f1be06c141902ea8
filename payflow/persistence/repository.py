"""Repository abstraction for workflow definitions, instances and audit records."""

from __future__ import annotations

from typing import Iterable, Protocol, Tuple

from ..contracts import WorkflowDefinition
from .models import AuditRecord, InstanceStatus, WorkflowInstance


class WorkflowRepository(Protocol):
    """Protocol for workflow persistence backends.

    Implementations must give read-after-write consistency per instance and
    write an instance together with its audit records atomically.
    """

    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Store a definition and return the stored copy.

        A definition already pinned by an instance is never overwritten; the
        edit is stored as the next version instead.
        """

    async def get_definition(
        self, definition_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        """Return a definition version, or the latest when ``version`` is None."""

    async def get_active_definition(self, org_id: str) -> WorkflowDefinition | None:
        """Return the most recently saved definition for an organization."""

    async def list_definitions(self, org_id: str | None = None) -> list[WorkflowDefinition]:
        """Return the latest version of every definition."""

    async def is_definition_referenced(self, definition_id: str, version: int) -> bool:
        """Whether any instance pins this definition version."""

    async def create_instance(
        self, instance: WorkflowInstance, records: Iterable[AuditRecord]
    ) -> None:
        """Insert a new instance and its first audit records."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve an instance by id."""

    async def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        records: Iterable[AuditRecord],
    ) -> None:
        """Persist ``instance`` if its stored version equals ``expected_version``.

        Raises:
            ConcurrentModificationError: another writer saved first.
            InstanceNotFoundError: the instance does not exist.
        """

    async def list_instances(
        self, org_id: str | None = None, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        """Return persisted instances, optionally filtered."""

    async def list_audit_records(self, instance_id: str) -> list[AuditRecord]:
        """Return an instance's audit records in sequence order."""

    async def list_unpublished_records(
        self, instance_id: str | None = None, limit: int = 500
    ) -> list[AuditRecord]:
        """Return audit records not yet handed to the event transport."""

    async def mark_records_published(self, keys: Iterable[Tuple[str, int]]) -> None:
        """Flag ``(instance_id, sequence)`` records as published."""
