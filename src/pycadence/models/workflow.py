"""Workflow graph definitions.

A workflow is an acyclic directed graph stored as an arena: nodes indexed
by id and a flat edge list. Repetition is modelled by re-triggering, never
by cycles.

Node kinds form a closed union:
    TriggerNode   - entry point, matched against inbound events
    ConditionNode - branches on a predicate ("true"/"false"/default edge)
    ActionNode    - sends one message to the instance's recipient
    DelayNode     - suspends the instance for a fixed duration
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, timedelta
from typing import Any, assert_never
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pycadence.errors import ValidationError
from pycadence.models.predicate import Predicate, parse_predicate

BRANCH_LABELS = ("true", "false")


@dataclass(frozen=True)
class FrequencyCap:
    """At most max_count new instances per recipient per workflow in any period."""

    max_count: int = 1
    period: timedelta = timedelta(hours=24)

    def validate(self) -> None:
        if self.max_count < 1:
            raise ValidationError("frequency cap max_count must be >= 1")
        if self.period <= timedelta(0):
            raise ValidationError("frequency cap period must be positive")


@dataclass(frozen=True)
class TimingWindow:
    """Hours and weekdays during which a trigger may fire.

    A window whose end is before its start wraps past midnight
    (e.g. 22:00-06:00).
    """

    start: time = time(0, 0)
    end: time = time(23, 59, 59)
    active_days: tuple[int, ...] = (0, 1, 2, 3, 4, 5, 6)
    """Weekdays the trigger is active on (Monday=0 ... Sunday=6)."""

    timezone: str = "UTC"

    def validate(self) -> None:
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValidationError(f"unknown timezone: {self.timezone!r}") from e
        if not self.active_days or any(d < 0 or d > 6 for d in self.active_days):
            raise ValidationError("active_days must hold weekdays in 0..6")

    def allows(self, at: datetime) -> bool:
        local = at.astimezone(ZoneInfo(self.timezone))
        if local.weekday() not in self.active_days:
            return False
        moment = local.time().replace(tzinfo=None)
        if self.start <= self.end:
            return self.start <= moment <= self.end
        return moment >= self.start or moment <= self.end


@dataclass(frozen=True)
class TriggerNode:
    node_id: str
    event_type: str
    condition: Predicate | None = None
    offset: timedelta = timedelta(0)
    """Wait this long after the event before the first step runs."""
    frequency_cap: FrequencyCap = field(default_factory=FrequencyCap)
    timing: TimingWindow | None = None


@dataclass(frozen=True)
class ConditionNode:
    node_id: str
    predicate: Predicate


@dataclass(frozen=True)
class ActionNode:
    node_id: str
    content_ref: str
    max_retries: int = 3


@dataclass(frozen=True)
class DelayNode:
    node_id: str
    delay: timedelta


Node = TriggerNode | ConditionNode | ActionNode | DelayNode


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    branch: str | None = None
    """Branch label for edges leaving a condition node; None is the default edge."""


@dataclass
class WorkflowDefinition:
    """A validated workflow graph plus its activation flag.

    Example:
        ```python
        workflow = WorkflowDefinition.build(
            workflow_id="welcome",
            owner="acme",
            nodes=[
                TriggerNode("start", event_type="signup"),
                ConditionNode("is_us", parse_predicate(
                    {"field": "country", "op": "eq", "value": "US"})),
                ActionNode("send_welcome", content_ref="tpl-welcome-us"),
            ],
            edges=[
                Edge("start", "is_us"),
                Edge("is_us", "send_welcome", branch="true"),
            ],
        )
        ```
    """

    workflow_id: str
    """Unique workflow identifier."""

    owner: str
    """Account that owns the workflow."""

    nodes: dict[str, Node]
    """Node arena indexed by node id."""

    edges: list[Edge]
    """Directed edges between nodes."""

    name: str = ""
    """Human readable name."""

    active: bool = False
    """Whether the trigger matcher creates new instances for this workflow."""

    schedule_id: str | None = None
    """Schedule this workflow was compiled from, if any."""

    revision: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def build(
        cls, workflow_id: str, owner: str, nodes: list[Node], edges: list[Edge], **kwargs: Any
    ) -> WorkflowDefinition:
        """Build and validate a workflow from a node list.

        Raises:
            ValidationError: On duplicate node ids or an invalid graph
        """
        arena: dict[str, Node] = {}
        for node in nodes:
            if node.node_id in arena:
                raise ValidationError(f"duplicate node id: {node.node_id!r}")
            arena[node.node_id] = node
        workflow = cls(
            workflow_id=workflow_id, owner=owner, nodes=arena, edges=list(edges), **kwargs
        )
        workflow.validate()
        return workflow

    @property
    def trigger(self) -> TriggerNode:
        for node in self.nodes.values():
            if isinstance(node, TriggerNode):
                return node
        raise ValidationError(f"workflow {self.workflow_id} has no trigger node")

    def outgoing(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def entry_node_id(self) -> str:
        """Id of the node that follows the trigger."""
        return self.outgoing(self.trigger.node_id)[0].target

    def select_edge(self, node_id: str, branch: str | None = None) -> Edge | None:
        """Edge labelled `branch`, falling back to the default edge."""
        edges = self.outgoing(node_id)
        for edge in edges:
            if branch is not None and edge.branch == branch:
                return edge
        for edge in edges:
            if edge.branch is None:
                return edge
        return None

    def validate(self) -> None:
        """Check the graph invariants.

        - node ids are non-empty and match their arena keys
        - every edge references existing nodes, no duplicate edges
        - exactly one trigger node, with no incoming edges and exactly one
          unlabelled outgoing edge
        - the graph is acyclic and every node is reachable from the trigger
        - non-condition nodes have at most one outgoing, unlabelled edge
        - condition edges carry unique "true"/"false" labels or no label

        Raises:
            ValidationError: On the first violated invariant
        """
        if not self.workflow_id:
            raise ValidationError("workflow_id is required")
        if not self.nodes:
            raise ValidationError("workflow has no nodes")

        for key, node in self.nodes.items():
            if not node.node_id or key != node.node_id:
                raise ValidationError(f"node arena key {key!r} does not match node id")
            _validate_node(node)

        triggers = [node for node in self.nodes.values() if isinstance(node, TriggerNode)]
        if len(triggers) != 1:
            raise ValidationError(f"workflow needs exactly one trigger node, found {len(triggers)}")
        trigger = triggers[0]

        seen: set[tuple[str, str]] = set()
        incoming: dict[str, int] = defaultdict(int)
        outgoing: dict[str, list[Edge]] = defaultdict(list)
        for edge in self.edges:
            if edge.source not in self.nodes or edge.target not in self.nodes:
                raise ValidationError(f"edge {edge.source}->{edge.target} references unknown node")
            if (edge.source, edge.target) in seen:
                raise ValidationError(f"duplicate edge {edge.source}->{edge.target}")
            seen.add((edge.source, edge.target))
            incoming[edge.target] += 1
            outgoing[edge.source].append(edge)

        if incoming[trigger.node_id]:
            raise ValidationError("trigger node cannot have incoming edges")
        trigger_edges = outgoing[trigger.node_id]
        if len(trigger_edges) != 1 or trigger_edges[0].branch is not None:
            raise ValidationError("trigger node needs exactly one unlabelled outgoing edge")

        for node_id, edges in outgoing.items():
            node = self.nodes[node_id]
            if isinstance(node, ConditionNode):
                labels = [edge.branch for edge in edges]
                if any(label is not None and label not in BRANCH_LABELS for label in labels):
                    raise ValidationError(f"condition {node_id} has an unknown branch label")
                if len(labels) != len(set(labels)):
                    raise ValidationError(f"condition {node_id} has duplicate branch labels")
            elif len(edges) > 1 or any(edge.branch is not None for edge in edges):
                raise ValidationError(f"node {node_id} may have one unlabelled outgoing edge")

        # Kahn's algorithm: every node must drain for the graph to be acyclic
        remaining = {node_id: incoming[node_id] for node_id in self.nodes}
        queue = deque(node_id for node_id, degree in remaining.items() if degree == 0)
        drained = 0
        while queue:
            node_id = queue.popleft()
            drained += 1
            for edge in outgoing[node_id]:
                remaining[edge.target] -= 1
                if remaining[edge.target] == 0:
                    queue.append(edge.target)
        if drained != len(self.nodes):
            raise ValidationError("workflow graph contains a cycle")

        reachable = {trigger.node_id}
        stack = [trigger.node_id]
        while stack:
            for edge in outgoing[stack.pop()]:
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    stack.append(edge.target)
        unreachable = set(self.nodes) - reachable
        if unreachable:
            raise ValidationError(f"nodes unreachable from trigger: {sorted(unreachable)}")

    def to_dict(self) -> dict[str, Any]:
        """Serialize as a node list plus edge list (JSON-compatible)."""
        return {
            "workflow_id": self.workflow_id,
            "owner": self.owner,
            "name": self.name,
            "active": self.active,
            "schedule_id": self.schedule_id,
            "revision": self.revision,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "nodes": [node_to_dict(node) for node in self.nodes.values()],
            "edges": [
                {"source": edge.source, "target": edge.target, "branch": edge.branch}
                for edge in self.edges
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowDefinition:
        nodes = [node_from_dict(item) for item in data["nodes"]]
        return cls(
            workflow_id=data["workflow_id"],
            owner=data["owner"],
            name=data.get("name", ""),
            active=data.get("active", False),
            schedule_id=data.get("schedule_id"),
            revision=data.get("revision", 0),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            nodes={node.node_id: node for node in nodes},
            edges=[
                Edge(item["source"], item["target"], item.get("branch")) for item in data["edges"]
            ],
        )

    def __repr__(self) -> str:
        return (
            f"WorkflowDefinition(workflow_id={self.workflow_id!r}, owner={self.owner!r}, "
            f"nodes={len(self.nodes)}, edges={len(self.edges)}, active={self.active})"
        )


def _validate_node(node: Node) -> None:
    match node:
        case TriggerNode():
            if not node.event_type:
                raise ValidationError(f"trigger {node.node_id} needs an event_type")
            if node.offset < timedelta(0):
                raise ValidationError(f"trigger {node.node_id} has a negative offset")
            node.frequency_cap.validate()
            if node.timing is not None:
                node.timing.validate()
        case ConditionNode():
            if node.predicate is None:
                raise ValidationError(f"condition {node.node_id} needs a predicate")
        case ActionNode():
            if not node.content_ref:
                raise ValidationError(f"action {node.node_id} needs a content_ref")
            if node.max_retries < 0:
                raise ValidationError(f"action {node.node_id} has negative max_retries")
        case DelayNode():
            if node.delay <= timedelta(0):
                raise ValidationError(f"delay {node.node_id} must be positive")
        case _:
            raise ValidationError(f"unknown node kind: {type(node).__name__}")


def node_to_dict(node: Node) -> dict[str, Any]:
    match node:
        case TriggerNode():
            return {
                "id": node.node_id,
                "kind": "trigger",
                "event_type": node.event_type,
                "condition": node.condition.to_dict() if node.condition else None,
                "offset_seconds": node.offset.total_seconds(),
                "frequency_cap": {
                    "max_count": node.frequency_cap.max_count,
                    "period_seconds": node.frequency_cap.period.total_seconds(),
                },
                "timing": _timing_to_dict(node.timing),
            }
        case ConditionNode():
            return {"id": node.node_id, "kind": "condition", "predicate": node.predicate.to_dict()}
        case ActionNode():
            return {
                "id": node.node_id,
                "kind": "action",
                "content_ref": node.content_ref,
                "max_retries": node.max_retries,
            }
        case DelayNode():
            return {
                "id": node.node_id,
                "kind": "delay",
                "delay_seconds": node.delay.total_seconds(),
            }
        case _:
            assert_never(node)


def node_from_dict(data: dict[str, Any]) -> Node:
    """Parse one serialized node.

    Raises:
        ValidationError: On an unknown node kind or malformed predicate
    """
    kind = data.get("kind")
    node_id = data.get("id", "")
    if kind == "trigger":
        cap = data.get("frequency_cap") or {}
        return TriggerNode(
            node_id=node_id,
            event_type=data["event_type"],
            condition=parse_predicate(data["condition"]) if data.get("condition") else None,
            offset=timedelta(seconds=data.get("offset_seconds", 0)),
            frequency_cap=FrequencyCap(
                max_count=cap.get("max_count", 1),
                period=timedelta(seconds=cap.get("period_seconds", 86400)),
            ),
            timing=_timing_from_dict(data.get("timing")),
        )
    if kind == "condition":
        return ConditionNode(node_id=node_id, predicate=parse_predicate(data["predicate"]))
    if kind == "action":
        return ActionNode(
            node_id=node_id,
            content_ref=data["content_ref"],
            max_retries=data.get("max_retries", 3),
        )
    if kind == "delay":
        return DelayNode(node_id=node_id, delay=timedelta(seconds=data["delay_seconds"]))
    raise ValidationError(f"unknown node kind: {kind!r}")


def _timing_to_dict(timing: TimingWindow | None) -> dict[str, Any] | None:
    if timing is None:
        return None
    return {
        "start": timing.start.isoformat(),
        "end": timing.end.isoformat(),
        "active_days": list(timing.active_days),
        "timezone": timing.timezone,
    }


def _timing_from_dict(data: dict[str, Any] | None) -> TimingWindow | None:
    if not data:
        return None
    return TimingWindow(
        start=time.fromisoformat(data["start"]),
        end=time.fromisoformat(data["end"]),
        active_days=tuple(data["active_days"]),
        timezone=data.get("timezone", "UTC"),
    )
