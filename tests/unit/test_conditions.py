"""Predicate evaluation and branch selection."""

import pytest

from conftest import ORG, payment_request
from payflow.conditions import build_context, evaluate, select_edge
from payflow.contracts import (
    ConditionNode,
    Edge,
    EndNode,
    Predicate,
    StartNode,
    WorkflowDefinition,
)
from payflow.errors import GraphInvalidError


@pytest.fixture
def context():
    request = payment_request(amount=75000, category="IT", department="Engineering")
    return build_context(request, {"priority": "high"})


@pytest.mark.parametrize(
    "predicate, expected",
    [
        (Predicate(field="amount", op="gte", value=50000), True),
        (Predicate(field="amount", op="lt", value=50000), False),
        (Predicate(field="category", op="eq", value="IT"), True),
        (Predicate(field="category", op="in", value=["HR", "Travel"]), False),
        (Predicate(field="department", op="not_in", value=["Sales"]), True),
        (Predicate(field="amount", op="between", value=[10000, 100000]), True),
        (Predicate(field="metadata.priority", op="eq", value="high"), True),
        (Predicate(field="urgency", op="ne", value="HIGH"), True),
    ],
)
def test_evaluate(context, predicate, expected):
    assert evaluate(predicate, context) is expected


def test_missing_field_never_matches(context):
    assert not evaluate(Predicate(field="vendor.id", op="eq", value=None), context)


def test_incomparable_values_do_not_match(context):
    assert not evaluate(Predicate(field="category", op="gt", value=10), context)


def _branching(edges) -> WorkflowDefinition:
    return WorkflowDefinition(
        id="wf",
        org_id=ORG,
        nodes=[
            StartNode(id="s"),
            ConditionNode(id="c"),
            EndNode(id="big"),
            EndNode(id="small"),
        ],
        edges=[Edge(source="s", target="c"), *edges],
    )


def test_matching_branch_is_selected(context):
    definition = _branching(
        [
            Edge(source="c", target="big", condition=Predicate(field="amount", op="gte", value=50000)),
            Edge(source="c", target="small", condition=Predicate(field="amount", op="lt", value=50000)),
        ]
    )
    assert select_edge(definition, definition.node("c"), context).target == "big"


def test_default_branch_used_when_nothing_matches(context):
    definition = _branching(
        [
            Edge(source="c", target="big", condition=Predicate(field="amount", op="gte", value=10**6)),
            Edge(source="c", target="small"),
        ]
    )
    assert select_edge(definition, definition.node("c"), context).target == "small"


def test_ambiguous_branches_are_a_definition_error(context):
    definition = _branching(
        [
            Edge(source="c", target="big", condition=Predicate(field="amount", op="gt", value=0)),
            Edge(source="c", target="small", condition=Predicate(field="category", op="eq", value="IT")),
        ]
    )
    with pytest.raises(GraphInvalidError, match="ambiguous"):
        select_edge(definition, definition.node("c"), context)


def test_no_matching_branch_without_default_is_a_definition_error(context):
    definition = _branching(
        [Edge(source="c", target="big", condition=Predicate(field="amount", op="lt", value=1))]
    )
    with pytest.raises(GraphInvalidError, match="no matching branch"):
        select_edge(definition, definition.node("c"), context)


def test_plain_node_follows_its_single_edge(context):
    definition = _branching([Edge(source="c", target="small")])
    assert select_edge(definition, definition.node("s"), context).target == "c"
