"""Core contracts for the payment approval workflow.

A :class:`WorkflowDefinition` is the static, reusable graph of steps an
organization configures. Nodes are addressed by stable string ids and each
node variant carries only the data relevant to its type.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .constants import DEFAULT_APPROVAL_TIMEOUT_HOURS
from .errors import GraphInvalidError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Canonical clock; every persisted timestamp is UTC."""
    return datetime.now(timezone.utc)


class NodeType(str, Enum):
    START = "START"
    APPROVAL = "APPROVAL"
    CONDITION = "CONDITION"
    NOTIFY = "NOTIFY"
    PAYMENT = "PAYMENT"
    END = "END"


class ApproverType(str, Enum):
    ROLE = "ROLE"
    USER = "USER"


class Predicate(BaseModel):
    """Comparison of one field of the evaluation context against a value."""

    model_config = ConfigDict(frozen=True)

    field: str
    op: Literal["eq", "ne", "gt", "gte", "lt", "lte", "in", "not_in", "between"] = "eq"
    value: Any = None


class LabelData(BaseModel):
    label: str = ""


class ApprovalData(BaseModel):
    """Who may act on an approval step and when the step applies."""

    label: str = ""
    approver_type: ApproverType
    approver_value: str
    step_order: int
    timeout_hours: int = DEFAULT_APPROVAL_TIMEOUT_HOURS
    applies_when: List[Predicate] = Field(default_factory=list)
    email_template: Optional[str] = None


class ConditionData(BaseModel):
    label: str = ""
    description: Optional[str] = None


class NotifyData(BaseModel):
    label: str = ""
    recipients: List[str] = Field(default_factory=list)
    template: Optional[str] = None


class PaymentData(BaseModel):
    label: str = ""
    gateway: Optional[str] = None
    auto_pay: bool = True


class StartNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["START"] = "START"
    data: LabelData = Field(default_factory=LabelData)


class ApprovalNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["APPROVAL"] = "APPROVAL"
    data: ApprovalData


class ConditionNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["CONDITION"] = "CONDITION"
    data: ConditionData = Field(default_factory=ConditionData)


class NotifyNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["NOTIFY"] = "NOTIFY"
    data: NotifyData = Field(default_factory=NotifyData)


class PaymentNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["PAYMENT"] = "PAYMENT"
    data: PaymentData = Field(default_factory=PaymentData)


class EndNode(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal["END"] = "END"
    data: LabelData = Field(default_factory=LabelData)


Node = Annotated[
    Union[StartNode, ApprovalNode, ConditionNode, NotifyNode, PaymentNode, EndNode],
    Field(discriminator="type"),
]


class Edge(BaseModel):
    """Directed connection between two nodes.

    ``condition`` is only meaningful on edges leaving a CONDITION node; an
    edge without one is that node's default branch.
    """

    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    condition: Optional[Predicate] = None


class WorkflowDefinition(BaseModel):
    """Immutable graph of approval steps for one organization."""

    model_config = ConfigDict(frozen=True)

    id: str
    org_id: str
    version: int = 1
    name: str = ""
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)

    def node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise GraphInvalidError(f"node {node_id!r} is not part of definition {self.id}")

    def has_node(self, node_id: str) -> bool:
        return any(node.id == node_id for node in self.nodes)

    @property
    def start_node(self) -> StartNode:
        for node in self.nodes:
            if node.type == NodeType.START:
                return node
        raise GraphInvalidError(f"definition {self.id} has no START node")

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def approval_nodes(self) -> List[ApprovalNode]:
        return [node for node in self.nodes if node.type == NodeType.APPROVAL]

    def validate_graph(self) -> None:
        """Check the structural invariants of the graph.

        Raises:
            GraphInvalidError: listing every problem found.
        """
        problems: List[str] = []
        ids = [node.id for node in self.nodes]
        for node_id, count in Counter(ids).items():
            if count > 1:
                problems.append(f"duplicate node id {node_id!r}")
        known = set(ids)
        for edge in self.edges:
            for endpoint in (edge.source, edge.target):
                if endpoint not in known:
                    problems.append(f"edge references unknown node {endpoint!r}")
        if problems:
            raise GraphInvalidError(problems)

        out_edges: Dict[str, List[Edge]] = defaultdict(list)
        in_edges: Dict[str, List[Edge]] = defaultdict(list)
        for edge in self.edges:
            out_edges[edge.source].append(edge)
            in_edges[edge.target].append(edge)

        starts = [n for n in self.nodes if n.type == NodeType.START]
        ends = [n for n in self.nodes if n.type == NodeType.END]
        if len(starts) != 1:
            problems.append(f"expected exactly one START node, found {len(starts)}")
        if not ends:
            problems.append("expected at least one END node")

        for node in self.nodes:
            outs = out_edges[node.id]
            ins = in_edges[node.id]
            if node.type == NodeType.START and ins:
                problems.append(f"START node {node.id!r} has incoming edges")
            if node.type == NodeType.END:
                if outs:
                    problems.append(f"END node {node.id!r} has outgoing edges")
                continue
            if not outs:
                problems.append(f"node {node.id!r} has no outgoing edge")
            if node.type == NodeType.APPROVAL and not ins:
                problems.append(f"APPROVAL node {node.id!r} has no incoming edge")
            if node.type == NodeType.CONDITION:
                defaults = [e for e in outs if e.condition is None]
                if len(defaults) > 1:
                    problems.append(
                        f"CONDITION node {node.id!r} has {len(defaults)} default edges"
                    )
            else:
                if len(outs) > 1:
                    problems.append(
                        f"node {node.id!r} has {len(outs)} outgoing edges; only CONDITION nodes may branch"
                    )
                if any(e.condition is not None for e in outs):
                    problems.append(
                        f"node {node.id!r} has a predicated edge but is not a CONDITION node"
                    )

        orders = Counter(n.data.step_order for n in self.approval_nodes())
        for order, count in orders.items():
            if count > 1:
                problems.append(f"step_order {order} is used by {count} APPROVAL nodes")

        if len(starts) == 1:
            problems.extend(self._check_paths(starts[0].id, out_edges))

        if problems:
            raise GraphInvalidError(problems)

    def _check_paths(self, start_id: str, out_edges: Dict[str, List[Edge]]) -> List[str]:
        """Reachability, acyclicity and step ordering along every path."""
        problems: List[str] = []
        order: List[str] = []
        state: Dict[str, int] = {}

        def visit(node_id: str) -> bool:
            state[node_id] = 1
            for edge in out_edges[node_id]:
                mark = state.get(edge.target)
                if mark == 1:
                    problems.append(f"cycle through {edge.source!r} -> {edge.target!r}")
                    return False
                if mark is None and not visit(edge.target):
                    return False
            state[node_id] = 2
            order.append(node_id)
            return True

        if not visit(start_id):
            return problems

        for node in self.nodes:
            if node.id not in state:
                problems.append(f"node {node.id!r} is unreachable from START")

        # highest step_order seen on any path leading into a node
        ceiling: Dict[str, Optional[int]] = {start_id: None}
        for node_id in reversed(order):
            node = self.node(node_id)
            seen = ceiling.get(node_id)
            if node.type == NodeType.APPROVAL:
                step = node.data.step_order
                if seen is not None and step <= seen:
                    problems.append(
                        f"step_order of {node_id!r} ({step}) does not increase after {seen}"
                    )
                seen = step if seen is None else max(seen, step)
            for edge in out_edges[node_id]:
                current = ceiling.get(edge.target)
                if seen is not None and (current is None or seen > current):
                    ceiling[edge.target] = seen
                else:
                    ceiling.setdefault(edge.target, current)
        return problems


class Identity(BaseModel):
    """The acting user, passed explicitly into every authorization check."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str
    org_id: Optional[str] = None
    name: Optional[str] = None
    active: bool = True


class Decision(BaseModel):
    """An approve/reject action; folded into the node state when applied."""

    actor: Identity
    approved: bool
    comments: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    node_id: Optional[str] = Field(
        default=None, description="Step the actor was looking at"
    )


class PaymentRequest(BaseModel):
    """Read-only view of the payment request a workflow is bound to."""

    id: str
    org_id: str
    amount: float
    currency: str = "INR"
    status: str = "PENDING"
    requested_by: str
    current_approval_level: int = 0
    title: str = ""
    category: Optional[str] = None
    urgency: Literal["LOW", "MEDIUM", "HIGH"] = "MEDIUM"
    department: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
