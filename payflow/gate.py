"""Step eligibility checks."""

from __future__ import annotations

from typing import NamedTuple, Optional

from .contracts import ApproverType, Identity, Node, NodeType


class GateResult(NamedTuple):
    eligible: bool
    reason: Optional[str] = None


def is_eligible(node: Node, actor: Identity, org_id: Optional[str] = None) -> GateResult:
    """Decide whether ``actor`` may act on ``node``.

    Pure and side-effect free. Ineligibility is a normal outcome reported via
    ``reason``; this function does not raise.
    """
    if node.type != NodeType.APPROVAL:
        return GateResult(False, "not_an_approval_step")
    if not actor.active:
        return GateResult(False, "inactive_actor")
    if org_id is not None and actor.org_id is not None and actor.org_id != org_id:
        return GateResult(False, "org_mismatch")

    data = node.data
    if data.approver_type == ApproverType.ROLE:
        if actor.role == data.approver_value:
            return GateResult(True)
        return GateResult(False, "role_mismatch")
    if actor.user_id == data.approver_value:
        return GateResult(True)
    return GateResult(False, "user_mismatch")
