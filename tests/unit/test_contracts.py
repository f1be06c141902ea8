"""Workflow definition parsing and graph validation."""

import pytest

from conftest import ORG, approval, chain, linear_definition
from payflow.contracts import (
    ConditionNode,
    Edge,
    EndNode,
    NodeType,
    NotifyNode,
    Predicate,
    StartNode,
    WorkflowDefinition,
)
from payflow.errors import GraphInvalidError


def _definition(nodes, edges) -> WorkflowDefinition:
    return WorkflowDefinition(id="wf", org_id=ORG, nodes=nodes, edges=edges)


def test_linear_definition_is_valid():
    definition = linear_definition()
    definition.validate_graph()
    assert definition.start_node.id == "start"
    assert [n.id for n in definition.approval_nodes()] == ["approval-1", "approval-2"]
    assert definition.outgoing("approval-1")[0].target == "approval-2"


def test_nodes_parse_from_plain_data_into_typed_variants():
    definition = WorkflowDefinition.model_validate(
        {
            "id": "wf",
            "org_id": ORG,
            "nodes": [
                {"id": "s", "type": "START"},
                {
                    "id": "a",
                    "type": "APPROVAL",
                    "data": {
                        "approver_type": "USER",
                        "approver_value": "u-cfo",
                        "step_order": 1,
                    },
                },
                {"id": "n", "type": "NOTIFY", "data": {"recipients": ["ORG_ADMIN"]}},
                {"id": "e", "type": "END"},
            ],
            "edges": [
                {"source": "s", "target": "a"},
                {"source": "a", "target": "n"},
                {"source": "n", "target": "e"},
            ],
        }
    )
    definition.validate_graph()
    approval_node = definition.node("a")
    assert approval_node.type == NodeType.APPROVAL
    assert approval_node.data.approver_value == "u-cfo"
    assert approval_node.data.timeout_hours == 24
    assert isinstance(definition.node("n"), NotifyNode)


def test_approval_node_requires_approver_data():
    with pytest.raises(ValueError):
        WorkflowDefinition.model_validate(
            {"id": "wf", "org_id": ORG, "nodes": [{"id": "a", "type": "APPROVAL"}]}
        )


def test_missing_start_and_end_are_reported_together():
    definition = _definition([approval("a", 1, "ORG_ADMIN")], [])
    with pytest.raises(GraphInvalidError) as exc:
        definition.validate_graph()
    problems = " ".join(exc.value.problems)
    assert "START" in problems
    assert "END" in problems


def test_edge_to_unknown_node_is_rejected():
    definition = _definition(
        [StartNode(id="s"), EndNode(id="e")],
        [Edge(source="s", target="ghost"), Edge(source="s", target="e")],
    )
    with pytest.raises(GraphInvalidError, match="ghost"):
        definition.validate_graph()


def test_step_order_must_increase_along_path():
    definition = _definition(
        [
            StartNode(id="s"),
            approval("a1", 2, "ORG_ADMIN"),
            approval("a2", 1, "ORG_FINANCE"),
            EndNode(id="e"),
        ],
        chain("s", "a1", "a2", "e"),
    )
    with pytest.raises(GraphInvalidError, match="step_order"):
        definition.validate_graph()


def test_duplicate_step_order_is_rejected():
    definition = _definition(
        [
            StartNode(id="s"),
            approval("a1", 1, "ORG_ADMIN"),
            approval("a2", 1, "ORG_FINANCE"),
            EndNode(id="e"),
        ],
        chain("s", "a1", "a2", "e"),
    )
    with pytest.raises(GraphInvalidError):
        definition.validate_graph()


def test_cycle_is_rejected():
    definition = _definition(
        [
            StartNode(id="s"),
            ConditionNode(id="c"),
            approval("a1", 1, "ORG_ADMIN"),
            EndNode(id="e"),
        ],
        [
            Edge(source="s", target="a1"),
            Edge(source="a1", target="c"),
            Edge(source="c", target="a1", condition=Predicate(field="amount", op="gt", value=10)),
            Edge(source="c", target="e"),
        ],
    )
    with pytest.raises(GraphInvalidError, match="cycle"):
        definition.validate_graph()


def test_only_condition_nodes_may_branch():
    definition = _definition(
        [
            StartNode(id="s"),
            approval("a1", 1, "ORG_ADMIN"),
            approval("a2", 2, "ORG_FINANCE"),
            EndNode(id="e"),
        ],
        [
            Edge(source="s", target="a1"),
            Edge(source="s", target="a2"),
            Edge(source="a1", target="e"),
            Edge(source="a2", target="e"),
        ],
    )
    with pytest.raises(GraphInvalidError, match="only CONDITION nodes may branch"):
        definition.validate_graph()


def test_unreachable_node_is_rejected():
    definition = _definition(
        [StartNode(id="s"), approval("a1", 1, "ORG_ADMIN"), EndNode(id="e")],
        chain("s", "e"),
    )
    with pytest.raises(GraphInvalidError) as exc:
        definition.validate_graph()
    assert any("a1" in p for p in exc.value.problems)


def test_step_order_checked_on_every_branch():
    high = Predicate(field="amount", op="gte", value=100000)
    definition = _definition(
        [
            StartNode(id="s"),
            approval("a1", 1, "ORG_ADMIN"),
            ConditionNode(id="c"),
            approval("a2", 3, "ORG_FINANCE"),
            approval("a3", 2, "SUPER_ADMIN"),
            EndNode(id="e"),
        ],
        [
            Edge(source="s", target="a1"),
            Edge(source="a1", target="c"),
            Edge(source="c", target="a2", condition=high),
            Edge(source="c", target="e"),
            Edge(source="a2", target="a3"),
            Edge(source="a3", target="e"),
        ],
    )
    with pytest.raises(GraphInvalidError, match="a3"):
        definition.validate_graph()
