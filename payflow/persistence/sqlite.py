"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Tuple

from ..contracts import WorkflowDefinition
from ..errors import ConcurrentModificationError, InstanceNotFoundError
from .models import AuditRecord, InstanceStatus, WorkflowInstance
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._mutex = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._mutex, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS definitions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    org_id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    UNIQUE (id, version)
                );
                CREATE TABLE IF NOT EXISTS instances (
                    id TEXT PRIMARY KEY,
                    definition_id TEXT NOT NULL,
                    definition_version INTEGER NOT NULL,
                    org_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    body TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS audit_records (
                    instance_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    body TEXT NOT NULL,
                    published INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (instance_id, sequence)
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._mutex:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_records(self, cur: sqlite3.Cursor, records: Iterable[AuditRecord]) -> None:
        cur.executemany(
            "INSERT INTO audit_records (instance_id, sequence, body) VALUES (?, ?, ?)",
            [(r.instance_id, r.sequence, r.model_dump_json()) for r in records],
        )

    def _save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        with self._mutex, self._conn:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT MAX(version) FROM definitions WHERE id = ?", (definition.id,)
            )
            latest = cur.fetchone()[0]
            if latest is None:
                version = definition.version
            else:
                cur.execute(
                    "SELECT 1 FROM instances WHERE definition_id = ? AND definition_version = ? LIMIT 1",
                    (definition.id, latest),
                )
                version = latest + 1 if cur.fetchone() else latest
                cur.execute(
                    "DELETE FROM definitions WHERE id = ? AND version = ?",
                    (definition.id, version),
                )
            stored = definition.model_copy(update={"version": version})
            cur.execute(
                "INSERT INTO definitions (id, version, org_id, body) VALUES (?, ?, ?, ?)",
                (stored.id, version, stored.org_id, stored.model_dump_json()),
            )
            return stored

    def _create_instance(
        self, instance: WorkflowInstance, records: list[AuditRecord]
    ) -> None:
        instance.version = 1
        with self._mutex, self._conn:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO instances
                    (id, definition_id, definition_version, org_id, status, version, body)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    instance.id,
                    instance.definition_id,
                    instance.definition_version,
                    instance.org_id,
                    instance.status.value,
                    instance.version,
                    instance.model_dump_json(),
                ),
            )
            self._insert_records(cur, records)

    def _save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        records: list[AuditRecord],
    ) -> None:
        updated = instance.model_copy(update={"version": expected_version + 1})
        with self._mutex, self._conn:
            cur = self._conn.cursor()
            cur.execute(
                "UPDATE instances SET status = ?, version = ?, body = ? WHERE id = ? AND version = ?",
                (
                    updated.status.value,
                    updated.version,
                    updated.model_dump_json(),
                    instance.id,
                    expected_version,
                ),
            )
            if cur.rowcount == 0:
                cur.execute("SELECT version FROM instances WHERE id = ?", (instance.id,))
                row = cur.fetchone()
                if row is None:
                    raise InstanceNotFoundError(f"instance {instance.id} not found")
                raise ConcurrentModificationError(
                    f"instance {instance.id} is at version {row['version']}, "
                    f"expected {expected_version}"
                )
            self._insert_records(cur, records)
        instance.version = updated.version

    def _mark_published(self, keys: list[Tuple[str, int]]) -> None:
        with self._mutex, self._conn:
            self._conn.executemany(
                "UPDATE audit_records SET published = 1 WHERE instance_id = ? AND sequence = ?",
                keys,
            )

    # ------------------------------------------------------------------
    # Repository API
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        return await asyncio.to_thread(self._save_definition, definition)

    async def get_definition(
        self, definition_id: str, version: int | None = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definitions WHERE id = ? ORDER BY version DESC LIMIT 1",
                definition_id,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM definitions WHERE id = ? AND version = ?",
                definition_id,
                version,
            )
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def get_active_definition(self, org_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM definitions WHERE org_id = ? ORDER BY seq DESC LIMIT 1",
            org_id,
        )
        return WorkflowDefinition.model_validate_json(row["body"]) if row else None

    async def list_definitions(self, org_id: str | None = None) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT d.body, d.org_id FROM definitions d
            WHERE d.version = (SELECT MAX(version) FROM definitions WHERE id = d.id)
            ORDER BY d.seq
            """,
        )
        return [
            WorkflowDefinition.model_validate_json(r["body"])
            for r in rows
            if org_id is None or r["org_id"] == org_id
        ]

    async def is_definition_referenced(self, definition_id: str, version: int) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM instances WHERE definition_id = ? AND definition_version = ? LIMIT 1",
            definition_id,
            version,
        )
        return row is not None

    async def create_instance(
        self, instance: WorkflowInstance, records: Iterable[AuditRecord]
    ) -> None:
        await asyncio.to_thread(self._create_instance, instance, list(records))

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM instances WHERE id = ?", instance_id
        )
        return WorkflowInstance.model_validate_json(row["body"]) if row else None

    async def save_instance(
        self,
        instance: WorkflowInstance,
        expected_version: int,
        records: Iterable[AuditRecord],
    ) -> None:
        await asyncio.to_thread(
            self._save_instance, instance, expected_version, list(records)
        )

    async def list_instances(
        self, org_id: str | None = None, status: InstanceStatus | None = None
    ) -> list[WorkflowInstance]:
        query = "SELECT body FROM instances WHERE 1 = 1"
        params: list[Any] = []
        if org_id is not None:
            query += " AND org_id = ?"
            params.append(org_id)
        if status is not None:
            query += " AND status = ?"
            params.append(InstanceStatus(status).value)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowInstance.model_validate_json(r["body"]) for r in rows]

    async def list_audit_records(self, instance_id: str) -> list[AuditRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT body FROM audit_records WHERE instance_id = ? ORDER BY sequence",
            instance_id,
        )
        return [AuditRecord.model_validate_json(r["body"]) for r in rows]

    async def list_unpublished_records(
        self, instance_id: str | None = None, limit: int = 500
    ) -> list[AuditRecord]:
        if instance_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM audit_records WHERE published = 0 ORDER BY instance_id, sequence LIMIT ?",
                limit,
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM audit_records WHERE published = 0 AND instance_id = ? ORDER BY sequence LIMIT ?",
                instance_id,
                limit,
            )
        return [AuditRecord.model_validate_json(r["body"]) for r in rows]

    async def mark_records_published(self, keys: Iterable[Tuple[str, int]]) -> None:
        await asyncio.to_thread(self._mark_published, list(keys))
