"""Storage for workflow definitions, instances and the audit outbox."""

from __future__ import annotations

from typing import Optional

from ..config import PayflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    AuditRecord,
    EventType,
    InstanceStatus,
    NodeState,
    NodeStatus,
    WorkflowInstance,
)
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresWorkflowRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresWorkflowRepository = None  # type: ignore

_repository_instance: WorkflowRepository | None = None


def _open(database_url: str) -> WorkflowRepository:
    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(location)
    if scheme in ("postgres", "postgresql"):
        if PostgresWorkflowRepository is None:
            raise RuntimeError("asyncpg is not installed; PostgreSQL is unavailable")
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[PayflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    The URL comes from ``database_url`` or else from configuration, which
    already folds in ``PAYFLOW_DATABASE_URL`` and ``DATABASE_URL``. Without a
    URL the repository lives in memory and is lost on exit. A call with no
    arguments reuses whatever an earlier call built.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    database_url = database_url or (config or load_config()).database_url
    _repository_instance = (
        _open(database_url) if database_url else InMemoryWorkflowRepository()
    )
    return _repository_instance


__all__ = [
    "AuditRecord",
    "EventType",
    "InstanceStatus",
    "NodeState",
    "NodeStatus",
    "WorkflowInstance",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
