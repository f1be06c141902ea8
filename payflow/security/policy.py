"""Administrative authorization for actions outside the approval steps."""

from __future__ import annotations

from typing import Iterable

from ..constants import DEFAULT_CANCEL_ROLES
from ..contracts import Identity
from ..persistence.models import WorkflowInstance

SUPER_ADMIN = "SUPER_ADMIN"


class PolicyEngine:
    """Evaluates authorization policies at runtime."""

    async def evaluate(
        self, actor: Identity, action: str, instance: WorkflowInstance
    ) -> bool:  # pragma: no cover - interface
        """Return ``True`` if ``actor`` may perform ``action`` on ``instance``."""
        raise NotImplementedError


class RolePolicyEngine(PolicyEngine):
    """Grants cancellation to configured administrative roles.

    Organization roles only reach instances of their own organization;
    ``SUPER_ADMIN`` reaches every organization.
    """

    def __init__(self, cancel_roles: Iterable[str] = DEFAULT_CANCEL_ROLES) -> None:
        self.cancel_roles = frozenset(cancel_roles)

    async def evaluate(
        self, actor: Identity, action: str, instance: WorkflowInstance
    ) -> bool:
        if action != "cancel" or not actor.active:
            return False
        if actor.role not in self.cancel_roles:
            return False
        return actor.role == SUPER_ADMIN or actor.org_id == instance.org_id
