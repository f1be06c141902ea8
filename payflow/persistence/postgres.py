"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from typing import Any, Iterable, Tuple

import asyncpg

from ..contracts import WorkflowDefinition
from ..errors import ConcurrentModificationError, InstanceNotFoundError
from .models import AuditRecord, InstanceStatus, WorkflowInstance
from .repository import WorkflowRepository


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                org_id TEXT NOT NULL,
                body JSONB NOT NULL,
                UNIQUE (id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                definition_version INTEGER NOT NULL,
                org_id TEXT NOT NULL,
                status TEXT NOT NULL,
                version INTEGER NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_audit_records (
                instance_id TEXT NOT NULL,
                sequence INTEGER NOT NULL,
                body JSONB NOT NULL,
                published BOOLEAN NOT NULL DEFAULT FALSE,
                PRIMARY KEY (instance_id, sequence)
            )
            """
        )

    async def _insert_records(
        self, conn: asyncpg.Connection, records: Iterable[AuditRecord]
    ) -> None:
        await conn.executemany(
            "INSERT INTO workflow_audit_records (instance_id, sequence, body) VALUES ($1, $2, $3)",
            [(r.instance_id, r.sequence, r.model_dump_json()) for r in records],
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        conn = await self._connect()
        try:
            async with conn.transaction():
                latest = await conn.fetchval(
                    "SELECT MAX(version) FROM workflow_definitions WHERE id = $1",
                    definition.id,
                )
                if latest is None:
                    version = definition.version
                else:
                    referenced = await conn.fetchval(
                        "SELECT EXISTS (SELECT 1 FROM workflow_instances WHERE definition_id = $1 AND definition_version = $2)",
                        definition.id,
                        latest,
                    )
                    version = latest + 1 if referenced else latest
                    await conn.execute(
                        "DELETE FROM workflow_definitions WHERE id = $1 AND version = $2",
                        definition.id,
                        version,
                    )
                stored = definition.model_copy(update={"version": version})
                await conn.execute(
                    "INSERT INTO workflow_definitions (id, version, org_id, body) VALUES ($1, $2, $3, $4)",
                    stored.id,
                    version,
                    stored.org_id,
                    stored.model_dump_json(),
                )
        finally:
            await conn.close()
        return stored

    async def get_definition(
        self, definition_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            if version is None:
                body = await conn.fetchval(
                    "SELECT body FROM workflow_definitions WHERE id = $1 ORDER BY version DESC LIMIT 1",
                    definition_id,
                )
            else:
                body = await conn.fetchval(
                    "SELECT body FROM workflow_definitions WHERE id = $1 AND version = $2",
                    definition_id,
                    version,
                )
        finally:
            await conn.close()
        return WorkflowDefinition.model_validate_json(body) if body else None

    async def get_active_definition(self, org_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            body = await conn.fetchval(
                "SELECT body FROM workflow_definitions WHERE org_id = $1 ORDER BY seq DESC LIMIT 1",
                org_id,
            )
        finally:
            await conn.close()
        return WorkflowDefinition.model_validate_json(body) if body else None

    async def list_definitions(self, org_id: str | None = None) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT DISTINCT ON (id) body, org_id, seq FROM workflow_definitions
                ORDER BY id, version DESC
                """
            )
        finally:
            await conn.close()
        rows = sorted(rows, key=lambda r: r["seq"])
        return [
            WorkflowDefinition.model_validate_json(r["body"])
            for r in rows
            if org_id is None or r["org_id"] == org_id
        ]

    async def is_definition_referenced(self, definition_id: str, version: int) -> bool:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT EXISTS (SELECT 1 FROM workflow_instances WHERE definition_id = $1 AND definition_version = $2)",
                definition_id,
                version,
            )
        finally:
            await conn.close()

    async def create_instance(
        self, instance: WorkflowInstance, records: Iterable[AuditRecord]
    ) -> None:
        instance.version = 1
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO workflow_instances
                        (id, definition_id, definition_version, org_id, status, version, body)
                    VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    instance.id,
                    instance.definition_id,
                    instance.definition_version,
                    instance.org_id,
                    instance.status.value,
                    instance.version,
                    instance.model_dump_json(),
                )
                await self._insert_records(conn, records)
        finally:
            await conn.close()

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        conn = await self._connect()
        try:
            body = await conn.fetchval(
                "SELECT body FROM workflow_instances WHERE id = $1", instance_id
            )
        finally:
            await conn.close()
        return WorkflowInstance.model_validate_json(body) if body else None

    async def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        records: Iterable[AuditRecord],
    ) -> None:
        updated = instance.model_copy(update={"version": expected_version + 1})
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT version FROM workflow_instances WHERE id = $1 FOR UPDATE",
                    instance.id,
                )
                if row is None:
                    raise InstanceNotFoundError(f"instance {instance.id} not found")
                if row["version"] != expected_version:
                    raise ConcurrentModificationError(
                        f"instance {instance.id} is at version {row['version']}, "
                        f"expected {expected_version}"
                    )
                await conn.execute(
                    "UPDATE workflow_instances SET status = $1, version = $2, body = $3 WHERE id = $4",
                    updated.status.value,
                    updated.version,
                    updated.model_dump_json(),
                    instance.id,
                )
                await self._insert_records(conn, records)
        finally:
            await conn.close()
        instance.version = updated.version

    async def list_instances(
        self, org_id: str | None = None, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        query = "SELECT body FROM workflow_instances WHERE TRUE"
        params: list[Any] = []
        if org_id is not None:
            params.append(org_id)
            query += f" AND org_id = ${len(params)}"
        if status is not None:
            params.append(InstanceStatus(status).value)
            query += f" AND status = ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [WorkflowInstance.model_validate_json(r["body"]) for r in rows]

    async def list_audit_records(self, instance_id: str) -> list[AuditRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT body FROM workflow_audit_records WHERE instance_id = $1 ORDER BY sequence",
                instance_id,
            )
        finally:
            await conn.close()
        return [AuditRecord.model_validate_json(r["body"]) for r in rows]

    async def list_unpublished_records(
        self, instance_id: str | None = None, limit: int = 500
    ) -> list[AuditRecord]:
        conn = await self._connect()
        try:
            if instance_id is None:
                rows = await conn.fetch(
                    "SELECT body FROM workflow_audit_records WHERE NOT published ORDER BY instance_id, sequence LIMIT $1",
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT body FROM workflow_audit_records WHERE NOT published AND instance_id = $1 ORDER BY sequence LIMIT $2",
                    instance_id,
                    limit,
                )
        finally:
            await conn.close()
        return [AuditRecord.model_validate_json(r["body"]) for r in rows]

    async def mark_records_published(self, keys: Iterable[Tuple[str, int]]) -> None:
        conn = await self._connect()
        try:
            await conn.executemany(
                "UPDATE workflow_audit_records SET published = TRUE WHERE instance_id = $1 AND sequence = $2",
                list(keys),
            )
        finally:
            await conn.close()
