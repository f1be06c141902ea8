"""Predicate evaluation and branch selection."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from .contracts import Edge, Node, NodeType, PaymentRequest, Predicate, WorkflowDefinition
from .errors import GraphInvalidError

logger = logging.getLogger(__name__)

_MISSING = object()


def build_context(
    payment_request: Optional[PaymentRequest], metadata: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Build the dictionary predicates are evaluated against.

    Payment request fields sit at the top level; instance metadata is
    available under ``metadata``.
    """
    context: Dict[str, Any] = {}
    if payment_request is not None:
        context.update(payment_request.model_dump())
    context["metadata"] = {**context.get("metadata", {}), **(metadata or {})}
    return context


def _lookup(context: Dict[str, Any], path: str) -> Any:
    value: Any = context
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        else:
            return _MISSING
    return value


def evaluate(predicate: Predicate, context: Dict[str, Any]) -> bool:
    """Return whether ``predicate`` holds; missing fields never match."""
    actual = _lookup(context, predicate.field)
    if actual is _MISSING:
        return False
    expected = predicate.value
    try:
        if predicate.op == "eq":
            return actual == expected
        if predicate.op == "ne":
            return actual != expected
        if predicate.op == "gt":
            return actual > expected
        if predicate.op == "gte":
            return actual >= expected
        if predicate.op == "lt":
            return actual < expected
        if predicate.op == "lte":
            return actual <= expected
        if predicate.op == "in":
            return actual in expected
        if predicate.op == "not_in":
            return actual not in expected
        if predicate.op == "between":
            low, high = expected
            return low <= actual <= high
    except (TypeError, ValueError) as exc:
        logger.warning(
            f"Predicate on {predicate.field!r} could not be evaluated: {exc}"
        )
        return False
    raise GraphInvalidError(f"unsupported predicate operator {predicate.op!r}")


def all_hold(predicates: List[Predicate], context: Dict[str, Any]) -> bool:
    return all(evaluate(p, context) for p in predicates)


def select_edge(
    definition: WorkflowDefinition, node: Node, context: Dict[str, Any]
) -> Edge:
    """Pick the single edge to follow out of ``node``.

    Never guesses: no edge, or more than one matching branch, is a broken
    definition.
    """
    outs = definition.outgoing(node.id)
    if node.type != NodeType.CONDITION:
        if len(outs) != 1:
            raise GraphInvalidError(
                f"node {node.id!r} must have exactly one outgoing edge, found {len(outs)}"
            )
        return outs[0]

    matched = [e for e in outs if e.condition is not None and evaluate(e.condition, context)]
    if len(matched) == 1:
        return matched[0]
    if len(matched) > 1:
        targets = ", ".join(e.target for e in matched)
        raise GraphInvalidError(
            f"CONDITION node {node.id!r} is ambiguous: branches to {targets} all match"
        )
    defaults = [e for e in outs if e.condition is None]
    if len(defaults) == 1:
        return defaults[0]
    raise GraphInvalidError(f"CONDITION node {node.id!r} has no matching branch")
