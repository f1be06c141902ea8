"""Step eligibility checks."""

from conftest import ADMIN, FINANCE, ORG, OTHER_ORG_ADMIN, approval
from payflow.contracts import EndNode, Identity
from payflow.gate import is_eligible


def test_role_approver_matches_role():
    node = approval("a1", 1, "ORG_ADMIN")
    assert is_eligible(node, ADMIN, ORG) == (True, None)


def test_role_mismatch_is_reported_not_raised():
    node = approval("a1", 1, "ORG_ADMIN")
    result = is_eligible(node, FINANCE, ORG)
    assert not result.eligible
    assert result.reason == "role_mismatch"


def test_user_approver_matches_user_id_only():
    node = approval("a1", 1, "u-finance", approver_type="USER")
    assert is_eligible(node, FINANCE, ORG).eligible
    result = is_eligible(node, ADMIN, ORG)
    assert result == (False, "user_mismatch")


def test_actor_from_another_org_is_not_eligible():
    node = approval("a1", 1, "ORG_ADMIN")
    assert is_eligible(node, OTHER_ORG_ADMIN, ORG) == (False, "org_mismatch")


def test_inactive_actor_is_not_eligible():
    node = approval("a1", 1, "ORG_ADMIN")
    retired = Identity(user_id="u-old", role="ORG_ADMIN", org_id=ORG, active=False)
    assert is_eligible(node, retired, ORG).reason == "inactive_actor"


def test_non_approval_node_is_never_eligible():
    assert is_eligible(EndNode(id="e"), ADMIN, ORG) == (False, "not_an_approval_step")
