"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Set, Tuple

from ..contracts import WorkflowDefinition
from ..errors import ConcurrentModificationError, InstanceNotFoundError
from .models import AuditRecord, InstanceStatus, WorkflowInstance
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Reads hand out deep copies so callers
    never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, Dict[int, WorkflowDefinition]] = {}
        self._active: Dict[str, str] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._records: Dict[str, List[AuditRecord]] = {}
        self._published: Set[Tuple[str, int]] = set()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        async with self._lock:
            versions = self._definitions.setdefault(definition.id, {})
            if versions:
                latest = max(versions)
                referenced = any(
                    i.definition_id == definition.id and i.definition_version == latest
                    for i in self._instances.values()
                )
                version = latest + 1 if referenced else latest
            else:
                version = definition.version
            stored = definition.model_copy(update={"version": version}, deep=True)
            versions[version] = stored
            self._active[definition.org_id] = definition.id
            return stored

    async def get_definition(
        self, definition_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        versions = self._definitions.get(definition_id)
        if not versions:
            return None
        return versions.get(version if version is not None else max(versions))

    async def get_active_definition(self, org_id: str) -> WorkflowDefinition | None:
        definition_id = self._active.get(org_id)
        if definition_id is None:
            return None
        return await self.get_definition(definition_id)

    async def list_definitions(self, org_id: str | None = None) -> list[WorkflowDefinition]:
        latest = [versions[max(versions)] for versions in self._definitions.values()]
        return [d for d in latest if org_id is None or d.org_id == org_id]

    async def is_definition_referenced(self, definition_id: str, version: int) -> bool:
        return any(
            i.definition_id == definition_id and i.definition_version == version
            for i in self._instances.values()
        )

    # ------------------------------------------------------------------
    async def create_instance(
        self, instance: WorkflowInstance, records: Iterable[AuditRecord]
    ) -> None:
        async with self._lock:
            if instance.id in self._instances:
                raise ValueError(f"instance {instance.id} already exists")
            instance.version = 1
            self._instances[instance.id] = instance.model_copy(deep=True)
            self._records[instance.id] = list(records)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        records: Iterable[AuditRecord],
    ) -> None:
        async with self._lock:
            stored = self._instances.get(instance.id)
            if stored is None:
                raise InstanceNotFoundError(f"instance {instance.id} not found")
            if stored.version != expected_version:
                raise ConcurrentModificationError(
                    f"instance {instance.id} is at version {stored.version}, "
                    f"expected {expected_version}"
                )
            instance.version = expected_version + 1
            self._instances[instance.id] = instance.model_copy(deep=True)
            self._records.setdefault(instance.id, []).extend(records)

    async def list_instances(
        self, org_id: str | None = None, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if (org_id is None or i.org_id == org_id)
            and (status is None or i.status == status)
        ]

    # ------------------------------------------------------------------
    async def list_audit_records(self, instance_id: str) -> list[AuditRecord]:
        return sorted(self._records.get(instance_id, []), key=lambda r: r.sequence)

    async def list_unpublished_records(
        self, instance_id: str | None = None, limit: int = 500
    ) -> list[AuditRecord]:
        ids = [instance_id] if instance_id else list(self._records)
        pending = [
            r
            for iid in ids
            for r in self._records.get(iid, [])
            if r.key not in self._published
        ]
        pending.sort(key=lambda r: (r.instance_id, r.sequence))
        return pending[:limit]

    async def mark_records_published(self, keys: Iterable[Tuple[str, int]]) -> None:
        async with self._lock:
            self._published.update(keys)
