"""Workflow definition structures.

This module provides the data structures for an automation definition: the
trigger configuration, the node graph (a closed set of node kinds, each with its
own payload type) and the concurrency/retry policy. Definitions arrive as JSON
from the definition API and are validated once, at save time.
"""

from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Union
from uuid import UUID, uuid4

from croniter import croniter

from crm_workflows.core.conditions import Condition, parse_condition, resolve_path
from crm_workflows.core.types import (
    DelayUnit,
    ExecutionMode,
    NodeType,
    ParallelFailureMode,
    TriggerType,
)

__all__ = [
    "ActionNodeData",
    "BranchNodeData",
    "ConditionNodeData",
    "DelayNodeData",
    "Edge",
    "EndNodeData",
    "FieldPredicate",
    "Node",
    "NodeData",
    "TriggerConfig",
    "TriggerNodeData",
    "Workflow",
]

_UNIT_SECONDS = {
    DelayUnit.SECONDS: 1,
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 60 * 60,
    DelayUnit.DAYS: 24 * 60 * 60,
    DelayUnit.WEEKS: 7 * 24 * 60 * 60,
}

DEFAULT_EDGE_LABEL = "default"
_TRUE_LABELS = frozenset({"yes", "true"})
_FALSE_LABELS = frozenset({"no", "false"})


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# =============================================================================
# Node payloads
# =============================================================================


@dataclass(frozen=True)
class TriggerNodeData:
    """Payload of the trigger node. It does no work; it marks the entry point."""

    label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"label": self.label} if self.label else {}


@dataclass(frozen=True)
class ConditionNodeData:
    """Payload of a condition node.

    Attributes:
        condition: Optional predicate of the node itself. When set, outgoing edges
            labelled ``yes``/``true`` or ``no``/``false`` are chosen by its result.
    """

    condition: Condition | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"condition": self.condition.to_dict()} if self.condition else {}


@dataclass(frozen=True)
class ActionNodeData:
    """Payload of an action node.

    Attributes:
        action: Name of the capability to invoke (``send_email``, ``create_task``...).
        params: Static configuration passed to the handler.
        output_key: Optional name under which the handler's result is exposed to
            later conditions.
    """

    action: str
    params: Mapping[str, Any] = field(default_factory=dict)
    output_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"action": self.action, "params": dict(self.params)}
        if self.output_key:
            data["output_key"] = self.output_key
        return data


@dataclass(frozen=True)
class DelayNodeData:
    """Payload of a delay node: either a relative offset or an absolute time.

    Attributes:
        amount: Size of the relative offset.
        unit: Unit of ``amount``.
        until: Absolute wake time; takes precedence over the offset.
    """

    amount: float = 0
    unit: DelayUnit = DelayUnit.MINUTES
    until: datetime | None = None

    @property
    def offset(self) -> timedelta:
        """Relative offset as a timedelta."""
        return timedelta(seconds=self.amount * _UNIT_SECONDS[self.unit])

    def wake_at(self, now: datetime) -> datetime:
        """Compute the wake timestamp for a cursor entering this node at ``now``."""
        if self.until is not None:
            return self.until
        return now + self.offset

    def to_dict(self) -> dict[str, Any]:
        if self.until is not None:
            return {"until": self.until.isoformat()}
        return {"amount": self.amount, "unit": str(self.unit)}


@dataclass(frozen=True)
class BranchNodeData:
    """Payload of a branch node.

    Attributes:
        split: Optional weights keyed by outgoing edge label for an A/B split.
            Without it the branch behaves like a condition node.
    """

    split: Mapping[str, float] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"split": dict(self.split)} if self.split else {}


@dataclass(frozen=True)
class EndNodeData:
    """Payload of an end node."""

    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason} if self.reason else {}


NodeData = Union[TriggerNodeData, ConditionNodeData, ActionNodeData, DelayNodeData, BranchNodeData, EndNodeData]

_DATA_TYPES: dict[NodeType, type] = {
    NodeType.TRIGGER: TriggerNodeData,
    NodeType.CONDITION: ConditionNodeData,
    NodeType.ACTION: ActionNodeData,
    NodeType.DELAY: DelayNodeData,
    NodeType.BRANCH: BranchNodeData,
    NodeType.END: EndNodeData,
}


def _parse_node_data(node_type: NodeType, raw: Mapping[str, Any]) -> NodeData:
    if node_type == NodeType.TRIGGER:
        return TriggerNodeData(label=raw.get("label"))
    if node_type == NodeType.CONDITION:
        condition = raw.get("condition")
        return ConditionNodeData(condition=parse_condition(condition) if condition is not None else None)
    if node_type == NodeType.ACTION:
        action = raw.get("action", raw.get("actionType"))
        if not isinstance(action, str) or not action:
            msg = "action node requires a non-empty 'action'"
            raise ValueError(msg)
        return ActionNodeData(action=action, params=dict(raw.get("params", {})), output_key=raw.get("output_key"))
    if node_type == NodeType.DELAY:
        until = raw.get("until", raw.get("waitUntil"))
        return DelayNodeData(
            amount=float(raw.get("amount", raw.get("delayAmount", 0))),
            unit=DelayUnit(str(raw.get("unit", raw.get("delayUnit", DelayUnit.MINUTES))).lower()),
            until=_parse_datetime(until),
        )
    if node_type == NodeType.BRANCH:
        split = raw.get("split")
        return BranchNodeData(split={str(k): float(v) for k, v in split.items()} if split else None)
    return EndNodeData(reason=raw.get("reason"))


# =============================================================================
# Graph elements
# =============================================================================


@dataclass(frozen=True)
class Node:
    """A unit of work in the workflow graph.

    Attributes:
        id: Identifier unique within the workflow.
        type: Kind of node.
        data: Kind-specific payload; its type must match ``type``.
        position: Editor coordinates, display only.
    """

    id: str
    type: NodeType
    data: NodeData | None = None
    position: tuple[float, float] | None = None

    def __post_init__(self) -> None:
        if self.data is None and self.type != NodeType.ACTION:
            object.__setattr__(self, "data", _DATA_TYPES[self.type]())

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Node:
        """Build a node from its JSON form.

        Raises:
            ValueError: If the node type or payload is malformed.
            ConditionError: If an embedded condition is malformed.
        """
        node_type = NodeType(str(raw["type"]).lower())
        position = raw.get("position")
        if isinstance(position, Mapping):
            position = (float(position.get("x", 0)), float(position.get("y", 0)))
        elif position is not None:
            position = (float(position[0]), float(position[1]))
        return cls(
            id=str(raw["id"]),
            type=node_type,
            data=_parse_node_data(node_type, raw.get("data") or {}),
            position=position,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = self.data.to_dict() if self.data is not None else {}
        data: dict[str, Any] = {"id": self.id, "type": str(self.type), "data": payload}
        if self.position is not None:
            data["position"] = {"x": self.position[0], "y": self.position[1]}
        return data


@dataclass(frozen=True)
class Edge:
    """A directed, optionally conditional link between two nodes.

    Attributes:
        id: Identifier unique within the workflow.
        source: Id of the source node.
        target: Id of the target node.
        label: Optional label; ``default`` marks the fallback edge of a
            condition/branch node, ``yes``/``no`` follow the node's own condition.
        condition: Optional condition selecting this edge out of a condition/branch node.

    Example:
        >>> edge = Edge(id="e1", source="check", target="notify", condition=parse_condition("amount > 100"))
    """

    id: str
    source: str
    target: str
    label: str | None = None
    condition: Condition | None = None

    @property
    def is_default(self) -> bool:
        """Whether this is the fallback edge of a condition or branch node."""
        if self.label is not None and self.label.lower() == DEFAULT_EDGE_LABEL:
            return True
        return self.label is None and self.condition is None

    @property
    def outcome(self) -> bool | None:
        """Condition-node result selected by a ``yes``/``no`` label, None for other labels."""
        if self.label is None:
            return None
        label = self.label.lower()
        if label in _TRUE_LABELS:
            return True
        if label in _FALSE_LABELS:
            return False
        return None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any], index: int = 0) -> Edge:
        """Build an edge from its JSON form."""
        condition = raw.get("condition")
        return cls(
            id=str(raw.get("id") or f"e{index}"),
            source=str(raw.get("source", raw.get("source_node_id"))),
            target=str(raw.get("target", raw.get("target_node_id"))),
            label=raw.get("label"),
            condition=parse_condition(condition) if condition is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "source": self.source, "target": self.target}
        if self.label is not None:
            data["label"] = self.label
        if self.condition is not None:
            data["condition"] = self.condition.to_dict()
        return data


# =============================================================================
# Trigger configuration
# =============================================================================


@dataclass(frozen=True)
class FieldPredicate:
    """A predicate over one field of the triggering entity snapshot.

    Attributes:
        field: Dotted path into the snapshot.
        operator: ``equals``, ``contains`` or ``changed_to``.
        value: Expected value.
    """

    field: str
    operator: str = "equals"
    value: Any = None

    OPERATORS = ("equals", "contains", "changed_to")

    def matches(self, snapshot: Mapping[str, Any], previous: Mapping[str, Any] | None = None) -> bool:
        """Check the predicate against a snapshot.

        ``changed_to`` holds when the new value equals ``value`` and the previous
        snapshot (when one was delivered) held a different value.
        """
        current = resolve_path(snapshot, self.field)
        if self.operator == "equals":
            return current == self.value
        if self.operator == "contains":
            if isinstance(current, (list, tuple, set)):
                return self.value in current
            return current is not None and str(self.value) in str(current)
        if current != self.value:
            return False
        if previous is None:
            return True
        return resolve_path(previous, self.field) != self.value

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class TriggerConfig:
    """Filter selecting which events start a workflow.

    Attributes:
        entity_type: Entity type the event must concern (``lead``, ``contact``...).
        predicates: Field predicates that must all hold against the snapshot.
        tag: Tag name for ``tag_applied`` triggers; None matches any tag.
        form_id: Form id for ``form_submitted`` triggers; None matches any form.
        interval: Period of a ``time_elapsed`` trigger.
        cron: Cron expression of a ``time_elapsed`` trigger.
        dedupe_fields: Extra snapshot fields folded into the dedupe key.
    """

    entity_type: str | None = None
    predicates: tuple[FieldPredicate, ...] = ()
    tag: str | None = None
    form_id: str | None = None
    interval: timedelta | None = None
    cron: str | None = None
    dedupe_fields: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any] | None) -> TriggerConfig:
        """Build a trigger configuration from its JSON form."""
        raw = raw or {}
        predicates = tuple(
            FieldPredicate(field=p["field"], operator=p.get("operator", "equals"), value=p.get("value"))
            for p in raw.get("predicates", raw.get("conditions", ()))
        )
        interval = raw.get("interval_seconds")
        return cls(
            entity_type=raw.get("entity_type"),
            predicates=predicates,
            tag=raw.get("tag"),
            form_id=raw.get("form_id"),
            interval=timedelta(seconds=float(interval)) if interval is not None else None,
            cron=raw.get("cron"),
            dedupe_fields=tuple(raw.get("dedupe_fields", ())),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.entity_type:
            data["entity_type"] = self.entity_type
        if self.predicates:
            data["predicates"] = [p.to_dict() for p in self.predicates]
        if self.tag:
            data["tag"] = self.tag
        if self.form_id:
            data["form_id"] = self.form_id
        if self.interval is not None:
            data["interval_seconds"] = self.interval.total_seconds()
        if self.cron:
            data["cron"] = self.cron
        if self.dedupe_fields:
            data["dedupe_fields"] = list(self.dedupe_fields)
        return data


# =============================================================================
# Workflow
# =============================================================================


@dataclass
class Workflow:
    """A saved automation definition: trigger, node graph and policy.

    The engine treats workflows as read-only; they are created and updated
    through the definition API and validated there.

    Attributes:
        name: Human-readable name.
        id: Opaque identifier.
        description: Free-form description.
        trigger_type: Kind of occurrence that starts the workflow.
        trigger_config: Filter applied to incoming events.
        nodes: Graph nodes; order is irrelevant.
        edges: Graph edges; order matters for condition evaluation.
        execution_mode: Sequential or parallel cursor traversal.
        max_concurrent_executions: Cap on simultaneously active executions.
        max_retries: Per-node retry budget for actions.
        parallel_failure_mode: Effect of a failing cursor on its siblings.
        is_active: Gates trigger evaluation.
        is_paused: Gates trigger evaluation and scheduling.
        tenant_id: Owning tenant.

    Example:
        >>> workflow = Workflow(
        ...     name="hot_lead_followup",
        ...     trigger_type=TriggerType.ENTITY_CREATED,
        ...     trigger_config=TriggerConfig(entity_type="lead"),
        ...     nodes=[
        ...         Node(id="start", type=NodeType.TRIGGER),
        ...         Node(id="email", type=NodeType.ACTION, data=ActionNodeData(action="send_email")),
        ...     ],
        ...     edges=[Edge(id="e1", source="start", target="email")],
        ... )
        >>> workflow.validate()
        []
    """

    name: str
    id: UUID = field(default_factory=uuid4)
    description: str = ""
    trigger_type: TriggerType = TriggerType.MANUAL
    trigger_config: TriggerConfig = field(default_factory=TriggerConfig)
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)
    execution_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    max_concurrent_executions: int = 1
    max_retries: int = 3
    parallel_failure_mode: ParallelFailureMode = ParallelFailureMode.INDEPENDENT
    is_active: bool = True
    is_paused: bool = False
    tenant_id: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def nodes_by_id(self) -> dict[str, Node]:
        """Mapping of node id to node."""
        return {node.id: node for node in self.nodes}

    def get_node(self, node_id: str) -> Node:
        """Look up a node by id.

        Raises:
            KeyError: If no node has that id.
        """
        for node in self.nodes:
            if node.id == node_id:
                return node
        msg = f"Node '{node_id}' not found in workflow '{self.name}'"
        raise KeyError(msg)

    @property
    def trigger_node(self) -> Node:
        """The single trigger node of the graph.

        Raises:
            KeyError: If the workflow has no trigger node.
        """
        for node in self.nodes:
            if node.type == NodeType.TRIGGER:
                return node
        msg = f"Workflow '{self.name}' has no trigger node"
        raise KeyError(msg)

    @property
    def accepts_triggers(self) -> bool:
        """Whether new executions may be created from events."""
        return self.is_active and not self.is_paused

    def validate(self, known_actions: Collection[str] | None = None) -> list[str]:
        """Validate the definition.

        Args:
            known_actions: Action names with registered handlers. When given,
                action nodes naming anything else are rejected.

        Returns:
            List of validation error messages. Empty list if valid.
        """
        from crm_workflows.engine.graph import WorkflowGraph

        errors: list[str] = []

        if not self.name:
            errors.append("Workflow name must not be empty")
        if self.max_concurrent_executions < 1:
            errors.append("max_concurrent_executions must be at least 1")
        if self.max_retries < 0:
            errors.append("max_retries must not be negative")

        errors.extend(self._validate_trigger_config())

        for node in self.nodes:
            expected = _DATA_TYPES[node.type]
            if not isinstance(node.data, expected):
                errors.append(f"Node '{node.id}': {node.type} node needs {expected.__name__} data")
                continue
            if isinstance(node.data, ActionNodeData) and known_actions is not None:
                if node.data.action not in known_actions:
                    errors.append(f"Node '{node.id}': unknown action '{node.data.action}'")
            if isinstance(node.data, DelayNodeData) and node.data.until is None and node.data.amount < 0:
                errors.append(f"Node '{node.id}': delay amount must not be negative")
            if isinstance(node.data, BranchNodeData) and node.data.split:
                labels = {edge.label for edge in self.edges if edge.source == node.id}
                for label, weight in node.data.split.items():
                    if weight <= 0:
                        errors.append(f"Node '{node.id}': split weight for '{label}' must be positive")
                    if label not in labels:
                        errors.append(f"Node '{node.id}': split label '{label}' has no outgoing edge")

        errors.extend(WorkflowGraph(self).validate())
        return errors

    def _validate_trigger_config(self) -> list[str]:
        config = self.trigger_config
        errors: list[str] = []
        if self.trigger_type in (TriggerType.ENTITY_CREATED, TriggerType.ENTITY_UPDATED) and not config.entity_type:
            errors.append(f"{self.trigger_type} trigger requires an entity_type")
        for predicate in config.predicates:
            if predicate.operator not in FieldPredicate.OPERATORS:
                errors.append(f"Trigger predicate on '{predicate.field}' has unknown operator '{predicate.operator}'")
        if self.trigger_type == TriggerType.TIME_ELAPSED:
            if (config.interval is None) == (config.cron is None):
                errors.append("time_elapsed trigger requires exactly one of interval or cron")
            elif config.interval is not None and config.interval <= timedelta(0):
                errors.append("time_elapsed interval must be positive")
            elif config.cron is not None and not croniter.is_valid(config.cron):
                errors.append(f"Invalid cron expression '{config.cron}'")
        return errors

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Workflow:
        """Build a workflow from its JSON form.

        Raises:
            ValueError: If a field has an invalid value.
            ConditionError: If a condition is malformed.
        """
        kwargs: dict[str, Any] = {
            "name": raw["name"],
            "description": raw.get("description") or "",
            "trigger_type": TriggerType(raw.get("trigger_type", TriggerType.MANUAL)),
            "trigger_config": TriggerConfig.from_dict(raw.get("trigger_config")),
            "nodes": [Node.from_dict(node) for node in raw.get("nodes", [])],
            "edges": [Edge.from_dict(edge, index) for index, edge in enumerate(raw.get("edges", []))],
            "execution_mode": ExecutionMode(raw.get("execution_mode", ExecutionMode.SEQUENTIAL)),
            "max_concurrent_executions": int(raw.get("max_concurrent_executions", 1)),
            "max_retries": int(raw.get("max_retries", 3)),
            "parallel_failure_mode": ParallelFailureMode(
                raw.get("parallel_failure_mode", ParallelFailureMode.INDEPENDENT)
            ),
            "is_active": bool(raw.get("is_active", True)),
            "is_paused": bool(raw.get("is_paused", False)),
            "tenant_id": raw.get("tenant_id"),
        }
        if raw.get("id") is not None:
            kwargs["id"] = raw["id"] if isinstance(raw["id"], UUID) else UUID(str(raw["id"]))
        for stamp in ("created_at", "updated_at"):
            if raw.get(stamp) is not None:
                kwargs[stamp] = _parse_datetime(raw[stamp])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSON form accepted by :meth:`from_dict`."""
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "trigger_type": str(self.trigger_type),
            "trigger_config": self.trigger_config.to_dict(),
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
            "execution_mode": str(self.execution_mode),
            "max_concurrent_executions": self.max_concurrent_executions,
            "max_retries": self.max_retries,
            "parallel_failure_mode": str(self.parallel_failure_mode),
            "is_active": self.is_active,
            "is_paused": self.is_paused,
            "tenant_id": self.tenant_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
