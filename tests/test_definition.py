"""Tests for workflow definition structures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from crm_workflows.core.definition import (
    ActionNodeData,
    BranchNodeData,
    ConditionNodeData,
    DelayNodeData,
    Edge,
    EndNodeData,
    FieldPredicate,
    Node,
    TriggerConfig,
    TriggerNodeData,
    Workflow,
)
from crm_workflows.core.types import DelayUnit, ExecutionMode, NodeType, TriggerType
from crm_workflows.exceptions import ConditionError


def _linear(*nodes: Node, **kwargs: object) -> Workflow:
    edges = [Edge(id=f"e{i}", source=a.id, target=b.id) for i, (a, b) in enumerate(zip(nodes, nodes[1:]))]
    return Workflow(name="linear", nodes=list(nodes), edges=edges, **kwargs)  # type: ignore[arg-type]


@pytest.mark.unit
class TestNode:
    """Tests for graph nodes and their payloads."""

    def test_default_payload(self) -> None:
        assert isinstance(Node(id="t", type=NodeType.TRIGGER).data, TriggerNodeData)
        assert isinstance(Node(id="d", type=NodeType.DELAY).data, DelayNodeData)
        assert isinstance(Node(id="x", type=NodeType.END).data, EndNodeData)

    def test_action_has_no_default_payload(self) -> None:
        assert Node(id="a", type=NodeType.ACTION).data is None

    def test_from_dict_action(self) -> None:
        node = Node.from_dict(
            {
                "id": "email",
                "type": "ACTION",
                "data": {"actionType": "send_email", "params": {"template": "welcome"}},
                "position": {"x": 10, "y": 20},
            }
        )

        assert node.type == NodeType.ACTION
        assert node.data == ActionNodeData(action="send_email", params={"template": "welcome"})
        assert node.position == (10.0, 20.0)

    def test_from_dict_action_requires_name(self) -> None:
        with pytest.raises(ValueError, match="action"):
            Node.from_dict({"id": "a", "type": "action", "data": {}})

    def test_from_dict_delay_aliases(self) -> None:
        node = Node.from_dict({"id": "wait", "type": "delay", "data": {"delayAmount": 2, "delayUnit": "Days"}})
        assert node.data == DelayNodeData(amount=2, unit=DelayUnit.DAYS)

    def test_from_dict_condition_parses_expression(self) -> None:
        node = Node.from_dict({"id": "c", "type": "condition", "data": {"condition": "score > 5"}})
        assert isinstance(node.data, ConditionNodeData)
        assert node.data.condition is not None
        assert node.data.condition.evaluate({"score": 6}) is True

    def test_from_dict_malformed_condition(self) -> None:
        with pytest.raises(ConditionError):
            Node.from_dict({"id": "c", "type": "condition", "data": {"condition": "score >"}})

    def test_unknown_type(self) -> None:
        with pytest.raises(ValueError):
            Node.from_dict({"id": "x", "type": "webhook"})


@pytest.mark.unit
class TestDelayNodeData:
    """Tests for delay wake time computation."""

    def test_relative_offset(self) -> None:
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        data = DelayNodeData(amount=3, unit=DelayUnit.HOURS)
        assert data.wake_at(now) == now + timedelta(hours=3)

    def test_absolute_time_wins(self) -> None:
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        until = datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert DelayNodeData(amount=3, until=until).wake_at(now) == until

    def test_naive_until_is_utc(self) -> None:
        node = Node.from_dict({"id": "w", "type": "delay", "data": {"until": "2024-03-01T12:00:00"}})
        assert isinstance(node.data, DelayNodeData)
        assert node.data.until == datetime(2024, 3, 1, 12, tzinfo=timezone.utc)


@pytest.mark.unit
class TestEdge:
    """Tests for edge labels."""

    def test_unlabelled_unconditional_edge_is_default(self) -> None:
        assert Edge(id="e", source="a", target="b").is_default

    def test_default_label(self) -> None:
        assert Edge(id="e", source="a", target="b", label="Default").is_default

    def test_yes_no_outcome(self) -> None:
        assert Edge(id="e", source="a", target="b", label="yes").outcome is True
        assert Edge(id="e", source="a", target="b", label="FALSE").outcome is False
        assert Edge(id="e", source="a", target="b", label="variant-a").outcome is None

    def test_from_dict_alias_fields(self) -> None:
        edge = Edge.from_dict({"source_node_id": "a", "target_node_id": "b", "condition": "x == 1"}, index=3)
        assert edge.id == "e3"
        assert (edge.source, edge.target) == ("a", "b")
        assert edge.condition is not None


@pytest.mark.unit
class TestTriggerConfig:
    """Tests for trigger filters."""

    def test_from_dict(self) -> None:
        config = TriggerConfig.from_dict(
            {
                "entity_type": "lead",
                "conditions": [{"field": "status", "operator": "changed_to", "value": "qualified"}],
                "interval_seconds": 3600,
                "dedupe_fields": ["owner_id"],
            }
        )

        assert config.entity_type == "lead"
        assert config.predicates == (FieldPredicate(field="status", operator="changed_to", value="qualified"),)
        assert config.interval == timedelta(hours=1)
        assert config.dedupe_fields == ("owner_id",)
        assert TriggerConfig.from_dict(config.to_dict()) == config

    def test_changed_to(self) -> None:
        predicate = FieldPredicate(field="status", operator="changed_to", value="won")

        assert predicate.matches({"status": "won"}, {"status": "open"}) is True
        assert predicate.matches({"status": "won"}, {"status": "won"}) is False
        assert predicate.matches({"status": "won"}) is True
        assert predicate.matches({"status": "open"}, {"status": "won"}) is False

    def test_contains(self) -> None:
        predicate = FieldPredicate(field="tags", operator="contains", value="vip")
        assert predicate.matches({"tags": ["vip", "new"]}) is True
        assert predicate.matches({"tags": []}) is False


@pytest.mark.unit
class TestWorkflowValidation:
    """Tests for save-time validation."""

    def test_valid_workflow(self, hot_lead_workflow: Workflow) -> None:
        assert hot_lead_workflow.validate(known_actions={"send_email"}) == []

    def test_unknown_action(self, hot_lead_workflow: Workflow) -> None:
        errors = hot_lead_workflow.validate(known_actions={"create_task"})
        assert errors == ["Node 'email': unknown action 'send_email'"]

    def test_policy_limits(self) -> None:
        workflow = _linear(
            Node(id="t", type=NodeType.TRIGGER),
            Node(id="x", type=NodeType.END),
            max_concurrent_executions=0,
            max_retries=-1,
        )
        errors = workflow.validate()
        assert "max_concurrent_executions must be at least 1" in errors
        assert "max_retries must not be negative" in errors

    def test_entity_trigger_needs_entity_type(self) -> None:
        workflow = _linear(Node(id="t", type=NodeType.TRIGGER), trigger_type=TriggerType.ENTITY_UPDATED)
        assert "entity_updated trigger requires an entity_type" in workflow.validate()

    @pytest.mark.parametrize(
        ("config", "message"),
        [
            (TriggerConfig(), "exactly one of interval or cron"),
            (TriggerConfig(interval=timedelta(hours=1), cron="0 * * * *"), "exactly one of interval or cron"),
            (TriggerConfig(interval=timedelta(0)), "interval must be positive"),
            (TriggerConfig(cron="every monday"), "Invalid cron expression"),
        ],
    )
    def test_time_trigger_config(self, config: TriggerConfig, message: str) -> None:
        workflow = _linear(
            Node(id="t", type=NodeType.TRIGGER),
            trigger_type=TriggerType.TIME_ELAPSED,
            trigger_config=config,
        )
        assert any(message in error for error in workflow.validate())

    def test_action_node_without_payload(self) -> None:
        workflow = _linear(Node(id="t", type=NodeType.TRIGGER), Node(id="a", type=NodeType.ACTION))
        assert "Node 'a': action node needs ActionNodeData data" in workflow.validate()

    def test_negative_delay(self) -> None:
        workflow = _linear(
            Node(id="t", type=NodeType.TRIGGER),
            Node(id="d", type=NodeType.DELAY, data=DelayNodeData(amount=-1)),
        )
        assert "Node 'd': delay amount must not be negative" in workflow.validate()

    def test_split_labels_must_have_edges(self) -> None:
        workflow = Workflow(
            name="ab",
            nodes=[
                Node(id="t", type=NodeType.TRIGGER),
                Node(id="split", type=NodeType.BRANCH, data=BranchNodeData(split={"a": 1, "b": 0})),
                Node(id="x", type=NodeType.END),
            ],
            edges=[
                Edge(id="e1", source="t", target="split"),
                Edge(id="e2", source="split", target="x", label="a"),
            ],
        )
        errors = workflow.validate()
        assert "Node 'split': split weight for 'b' must be positive" in errors
        assert "Node 'split': split label 'b' has no outgoing edge" in errors

    def test_parallel_fan_out_allowed(self) -> None:
        workflow = Workflow(
            name="fan_out",
            execution_mode=ExecutionMode.PARALLEL,
            nodes=[
                Node(id="t", type=NodeType.TRIGGER),
                Node(id="a", type=NodeType.END),
                Node(id="b", type=NodeType.END),
            ],
            edges=[Edge(id="e1", source="t", target="a"), Edge(id="e2", source="t", target="b")],
        )
        assert workflow.validate() == []
        workflow.execution_mode = ExecutionMode.SEQUENTIAL
        assert any("fans out" in error for error in workflow.validate())


@pytest.mark.unit
class TestWorkflowSerialization:
    """Tests for the JSON form of workflows."""

    def test_round_trip(self, hot_lead_workflow: Workflow) -> None:
        restored = Workflow.from_dict(hot_lead_workflow.to_dict())

        assert restored.id == hot_lead_workflow.id
        assert restored.nodes == hot_lead_workflow.nodes
        assert restored.edges == hot_lead_workflow.edges
        assert restored.trigger_config == hot_lead_workflow.trigger_config
        assert restored.created_at == hot_lead_workflow.created_at

    def test_from_dict_defaults(self) -> None:
        workflow = Workflow.from_dict(
            {
                "id": "0b6c7f0e-9a43-4a59-8a53-0ad6b4e4c1d2",
                "name": "manual",
                "nodes": [{"id": "t", "type": "trigger"}],
            }
        )

        assert workflow.id == UUID("0b6c7f0e-9a43-4a59-8a53-0ad6b4e4c1d2")
        assert workflow.trigger_type == TriggerType.MANUAL
        assert workflow.execution_mode == ExecutionMode.SEQUENTIAL
        assert workflow.max_concurrent_executions == 1
        assert workflow.max_retries == 3
        assert workflow.accepts_triggers

    def test_paused_workflow_rejects_triggers(self, hot_lead_workflow: Workflow) -> None:
        hot_lead_workflow.is_paused = True
        assert not hot_lead_workflow.accepts_triggers

    def test_trigger_node_lookup(self, hot_lead_workflow: Workflow) -> None:
        assert hot_lead_workflow.trigger_node.id == "start"
        with pytest.raises(KeyError):
            hot_lead_workflow.get_node("missing")
