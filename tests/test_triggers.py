"""Tests for the trigger evaluator."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import pytest

from crm_workflows.core.definition import Edge, FieldPredicate, Node, TriggerConfig, Workflow
from crm_workflows.core.models import CRMEvent, Execution
from crm_workflows.core.types import EventKind, ExecutionStatus, NodeType, TriggerType
from crm_workflows.engine.registry import WorkflowRegistry
from crm_workflows.engine.triggers import TriggerEvaluator
from crm_workflows.exceptions import EventDeliveryError, WorkflowNotFoundError
from crm_workflows.store.memory import InMemoryExecutionStore

if TYPE_CHECKING:
    from crm_workflows.config import EngineConfig
    from tests.conftest import FakeClock


def make_workflow(trigger_type: TriggerType, config: TriggerConfig | None = None, **kwargs: Any) -> Workflow:
    """Build a trigger -> end workflow."""
    return Workflow(
        name=f"{trigger_type}_workflow",
        trigger_type=trigger_type,
        trigger_config=config or TriggerConfig(),
        nodes=[Node(id="start", type=NodeType.TRIGGER), Node(id="done", type=NodeType.END)],
        edges=[Edge(id="e1", source="start", target="done")],
        **kwargs,
    )


def make_event(kind: EventKind = EventKind.CREATED, **kwargs: Any) -> CRMEvent:
    kwargs.setdefault("entity_snapshot", {"id": "lead-1", "score": 80, "status": "new"})
    return CRMEvent(entity_type=kwargs.pop("entity_type", "lead"), event_kind=kind, **kwargs)


class FlakyStore(InMemoryExecutionStore):
    """In-memory store whose first ``failures`` enqueues raise."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def enqueue(self, execution: Execution) -> bool:
        self.attempts += 1
        if self.attempts <= self.failures:
            msg = "database unavailable"
            raise ConnectionError(msg)
        return await super().enqueue(execution)


@pytest.fixture
def store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def registry() -> WorkflowRegistry:
    return WorkflowRegistry()


@pytest.fixture
def evaluator(
    store: InMemoryExecutionStore, registry: WorkflowRegistry, engine_config: EngineConfig, clock: FakeClock
) -> TriggerEvaluator:
    return TriggerEvaluator(store, registry, engine_config, clock)


@pytest.mark.unit
class TestMatching:
    """Tests for event to trigger matching."""

    def test_entity_created(self) -> None:
        workflow = make_workflow(TriggerType.ENTITY_CREATED, TriggerConfig(entity_type="lead"))

        assert TriggerEvaluator.matches(workflow, make_event())
        assert not TriggerEvaluator.matches(workflow, make_event(entity_type="contact"))
        assert not TriggerEvaluator.matches(workflow, make_event(EventKind.UPDATED))

    def test_deleted_fires_nothing(self) -> None:
        for trigger_type in TriggerType:
            assert not TriggerEvaluator.matches(make_workflow(trigger_type), make_event(EventKind.DELETED))

    def test_inactive_and_paused(self) -> None:
        event = make_event()
        assert not TriggerEvaluator.matches(make_workflow(TriggerType.ENTITY_CREATED, is_active=False), event)
        assert not TriggerEvaluator.matches(make_workflow(TriggerType.ENTITY_CREATED, is_paused=True), event)

    def test_tag_filter(self) -> None:
        workflow = make_workflow(TriggerType.TAG_APPLIED, TriggerConfig(tag="vip"))

        assert TriggerEvaluator.matches(workflow, make_event(EventKind.TAG_APPLIED, tag="vip"))
        assert not TriggerEvaluator.matches(workflow, make_event(EventKind.TAG_APPLIED, tag="cold"))
        any_tag = make_workflow(TriggerType.TAG_APPLIED)
        assert TriggerEvaluator.matches(any_tag, make_event(EventKind.TAG_APPLIED, tag="x"))

    def test_form_filter(self) -> None:
        workflow = make_workflow(TriggerType.FORM_SUBMITTED, TriggerConfig(form_id="42"))

        assert TriggerEvaluator.matches(workflow, make_event(EventKind.FORM_SUBMITTED, form_id="42"))
        assert not TriggerEvaluator.matches(workflow, make_event(EventKind.FORM_SUBMITTED, form_id="7"))

    def test_predicates(self) -> None:
        workflow = make_workflow(
            TriggerType.ENTITY_UPDATED,
            TriggerConfig(
                entity_type="lead",
                predicates=(FieldPredicate(field="status", operator="changed_to", value="qualified"),),
            ),
        )
        qualified = {"id": "lead-1", "status": "qualified"}

        assert TriggerEvaluator.matches(
            workflow, make_event(EventKind.UPDATED, entity_snapshot=qualified, previous_snapshot={"status": "new"})
        )
        assert not TriggerEvaluator.matches(
            workflow,
            make_event(EventKind.UPDATED, entity_snapshot=qualified, previous_snapshot={"status": "qualified"}),
        )


@pytest.mark.unit
class TestDedupeKey:
    """Tests for idempotence keys."""

    def test_created(self) -> None:
        workflow = make_workflow(TriggerType.ENTITY_CREATED)
        assert TriggerEvaluator.dedupe_key(workflow, make_event()) == f"lead-1:created:{workflow.id}"

    def test_updates_include_commit_time(self) -> None:
        workflow = make_workflow(TriggerType.ENTITY_UPDATED)
        first = make_event(EventKind.UPDATED, occurred_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        second = make_event(EventKind.UPDATED, occurred_at=datetime(2024, 1, 2, tzinfo=timezone.utc))

        assert TriggerEvaluator.dedupe_key(workflow, first) != TriggerEvaluator.dedupe_key(workflow, second)

    def test_update_without_commit_time_uses_snapshot(self) -> None:
        workflow = make_workflow(TriggerType.ENTITY_UPDATED)
        stamped = make_event(EventKind.UPDATED, entity_snapshot={"id": "lead-1", "updated_at": "2024-01-01T09:00:00"})
        first = make_event(EventKind.UPDATED, entity_snapshot={"id": "lead-1", "score": 10})
        again = make_event(EventKind.UPDATED, entity_snapshot={"id": "lead-1", "score": 10})
        changed = make_event(EventKind.UPDATED, entity_snapshot={"id": "lead-1", "score": 20})

        assert TriggerEvaluator.dedupe_key(workflow, stamped).endswith(":2024-01-01T09:00:00")
        assert TriggerEvaluator.dedupe_key(workflow, first) == TriggerEvaluator.dedupe_key(workflow, again)
        assert TriggerEvaluator.dedupe_key(workflow, first) != TriggerEvaluator.dedupe_key(workflow, changed)

    def test_tag_and_dedupe_fields(self) -> None:
        workflow = make_workflow(TriggerType.TAG_APPLIED, TriggerConfig(dedupe_fields=("status",)))
        key = TriggerEvaluator.dedupe_key(workflow, make_event(EventKind.TAG_APPLIED, tag="vip"))
        assert key == f"lead-1:tag_applied:{workflow.id}:vip:status=new"


@pytest.mark.unit
class TestNotify:
    """Tests for inbound event handling."""

    async def test_creates_one_execution_per_matching_workflow(
        self, evaluator: TriggerEvaluator, registry: WorkflowRegistry, store: InMemoryExecutionStore
    ) -> None:
        leads = make_workflow(TriggerType.ENTITY_CREATED, TriggerConfig(entity_type="lead"))
        also_leads = make_workflow(TriggerType.ENTITY_CREATED)
        contacts = make_workflow(TriggerType.ENTITY_CREATED, TriggerConfig(entity_type="contact"))
        for workflow in (leads, also_leads, contacts):
            registry.register(workflow)

        created = await evaluator.notify("lead", "created", {"id": "lead-1", "score": 80})

        assert {execution.workflow_id for execution in created} == {leads.id, also_leads.id}
        stored = await store.get(created[0].id)
        assert stored is not None
        assert stored.status == ExecutionStatus.PENDING
        assert stored.trigger_data["entity"] == {"id": "lead-1", "score": 80}
        assert stored.trigger_data["entity_type"] == "lead"

    async def test_redelivery_is_deduplicated(
        self, evaluator: TriggerEvaluator, registry: WorkflowRegistry, store: InMemoryExecutionStore
    ) -> None:
        registry.register(make_workflow(TriggerType.ENTITY_CREATED))

        assert len(await evaluator.notify("lead", "created", {"id": "lead-1"})) == 1
        assert await evaluator.notify("lead", "created", {"id": "lead-1"}) == []
        assert (await store.list_executions())[1] == 1

    async def test_distinct_updates_each_fire(
        self, evaluator: TriggerEvaluator, registry: WorkflowRegistry, clock: FakeClock
    ) -> None:
        registry.register(make_workflow(TriggerType.ENTITY_UPDATED, TriggerConfig(entity_type="lead")))

        first = await evaluator.notify("lead", EventKind.UPDATED, {"id": "lead-1"}, clock())
        second = await evaluator.notify("lead", EventKind.UPDATED, {"id": "lead-1"}, clock.advance(seconds=1))
        again = await evaluator.notify("lead", EventKind.UPDATED, {"id": "lead-1"}, clock())

        assert len(first) == 1
        assert len(second) == 1
        assert again == []

    async def test_update_redelivery_without_commit_time(
        self, evaluator: TriggerEvaluator, registry: WorkflowRegistry, store: InMemoryExecutionStore, clock: FakeClock
    ) -> None:
        registry.register(make_workflow(TriggerType.ENTITY_UPDATED, TriggerConfig(entity_type="lead")))
        snapshot = {"id": "lead-1", "score": 80}

        first = await evaluator.notify("lead", "updated", snapshot)
        clock.advance(seconds=1)
        second = await evaluator.notify("lead", "updated", snapshot)

        assert len(first) == 1
        assert second == []
        assert (await store.list_executions())[1] == 1
        assert first[0].trigger_data["occurred_at"] is None

    async def test_explicit_dedupe_key(self, evaluator: TriggerEvaluator, registry: WorkflowRegistry) -> None:
        registry.register(make_workflow(TriggerType.ENTITY_UPDATED, TriggerConfig(entity_type="lead")))

        first = await evaluator.notify("lead", "updated", {"id": "lead-1"}, dedupe_key="evt-1")
        second = await evaluator.notify("lead", "updated", {"id": "lead-1"}, dedupe_key="evt-1")

        assert len(first) == 1
        assert first[0].dedupe_key == f"evt-1:{first[0].workflow_id}"
        assert second == []

    async def test_tenant_isolation(self, evaluator: TriggerEvaluator, registry: WorkflowRegistry) -> None:
        acme = make_workflow(TriggerType.ENTITY_CREATED, tenant_id="acme")
        globex = make_workflow(TriggerType.ENTITY_CREATED, tenant_id="globex")
        shared = make_workflow(TriggerType.ENTITY_CREATED)
        for workflow in (acme, globex, shared):
            registry.register(workflow)

        created = await evaluator.notify("lead", "created", {"id": "lead-1"}, tenant_id="acme")

        assert {execution.workflow_id for execution in created} == {acme.id, shared.id}
        assert {execution.tenant_id for execution in created} == {"acme"}

    async def test_unknown_event_kind(self, evaluator: TriggerEvaluator) -> None:
        with pytest.raises(ValueError):
            await evaluator.notify("lead", "archived", {"id": "lead-1"})

    async def test_store_failure_is_retried(
        self, registry: WorkflowRegistry, engine_config: EngineConfig, clock: FakeClock
    ) -> None:
        store = FlakyStore(failures=2)
        evaluator = TriggerEvaluator(store, registry, engine_config, clock)
        registry.register(make_workflow(TriggerType.ENTITY_CREATED))

        created = await evaluator.notify("lead", "created", {"id": "lead-1"})

        assert len(created) == 1
        assert store.attempts == 3
        assert evaluator.failed_events == 0

    async def test_store_failure_is_reported(
        self, registry: WorkflowRegistry, engine_config: EngineConfig, clock: FakeClock
    ) -> None:
        store = FlakyStore(failures=10)
        evaluator = TriggerEvaluator(store, registry, engine_config, clock)
        workflow = make_workflow(TriggerType.ENTITY_CREATED)
        registry.register(workflow)

        with pytest.raises(EventDeliveryError) as exc_info:
            await evaluator.notify("lead", "created", {"id": "lead-1"})

        assert list(exc_info.value.failures) == [workflow.id]
        assert store.attempts == engine_config.enqueue_attempts
        assert evaluator.failed_events == 1


@pytest.mark.unit
class TestExecuteNow:
    """Tests for manual runs."""

    async def test_manual_runs_are_not_deduplicated(
        self, evaluator: TriggerEvaluator, registry: WorkflowRegistry
    ) -> None:
        workflow = make_workflow(TriggerType.MANUAL, is_active=False)
        registry.register(workflow)

        first = await evaluator.execute_now(workflow.id, {"reason": "test"})
        second = await evaluator.execute_now(workflow.id, {"reason": "test"})

        assert first.id != second.id
        assert first.trigger_type == TriggerType.MANUAL
        assert first.trigger_data == {"reason": "test"}

    async def test_unknown_workflow(self, evaluator: TriggerEvaluator) -> None:
        with pytest.raises(WorkflowNotFoundError):
            await evaluator.execute_now(uuid4())


@pytest.mark.unit
class TestTimeTriggers:
    """Tests for ``time_elapsed`` schedules."""

    async def test_interval(self, evaluator: TriggerEvaluator, registry: WorkflowRegistry, clock: FakeClock) -> None:
        start = clock()
        workflow = make_workflow(
            TriggerType.TIME_ELAPSED, TriggerConfig(interval=timedelta(hours=1)), created_at=start
        )
        registry.register(workflow)

        assert await evaluator.evaluate_due(start + timedelta(minutes=30)) == []

        # Two slots were missed; only the latest fires.
        created = await evaluator.evaluate_due(start + timedelta(hours=2, minutes=30))
        assert len(created) == 1
        assert created[0].trigger_data["scheduled_for"] == (start + timedelta(hours=2)).isoformat()

        assert await evaluator.evaluate_due(start + timedelta(hours=2, minutes=45)) == []
        later = await evaluator.evaluate_due(start + timedelta(hours=3))
        assert [e.trigger_data["scheduled_for"] for e in later] == [(start + timedelta(hours=3)).isoformat()]

    async def test_cron(self, evaluator: TriggerEvaluator, registry: WorkflowRegistry, clock: FakeClock) -> None:
        created_at = datetime(2024, 1, 1, 8, 45, tzinfo=timezone.utc)
        workflow = make_workflow(TriggerType.TIME_ELAPSED, TriggerConfig(cron="0 * * * *"), created_at=created_at)
        registry.register(workflow)

        now = datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc)
        created = await evaluator.evaluate_due(now)

        assert len(created) == 1
        assert created[0].dedupe_key == f"time_elapsed:{workflow.id}:2024-01-01T09:00:00+00:00"
        assert await evaluator.evaluate_due(now + timedelta(minutes=10)) == []

    async def test_concurrent_polls_fire_once(
        self, evaluator: TriggerEvaluator, registry: WorkflowRegistry, store: InMemoryExecutionStore, clock: FakeClock
    ) -> None:
        start = clock()
        registry.register(
            make_workflow(TriggerType.TIME_ELAPSED, TriggerConfig(interval=timedelta(minutes=5)), created_at=start)
        )
        other = TriggerEvaluator(store, registry, evaluator.config, clock)
        now = start + timedelta(minutes=6)

        first = await evaluator.evaluate_due(now)
        second = await other.evaluate_due(now)

        assert len(first) + len(second) == 1
        assert (await store.list_executions())[1] == 1

    async def test_event_workflows_are_ignored(self, evaluator: TriggerEvaluator, registry: WorkflowRegistry) -> None:
        registry.register(make_workflow(TriggerType.ENTITY_CREATED))
        assert await evaluator.evaluate_due() == []
