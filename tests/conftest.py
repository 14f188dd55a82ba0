"""Shared test fixtures for crm-workflows test suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from crm_workflows.config import EngineConfig
from crm_workflows.core.conditions import parse_condition
from crm_workflows.core.definition import (
    ActionNodeData,
    ConditionNodeData,
    Edge,
    Node,
    TriggerConfig,
    Workflow,
)
from crm_workflows.core.types import NodeType, TriggerType
from crm_workflows.db.models import AutomationWorkflowModel
from crm_workflows.engine.actions import ActionRegistry
from crm_workflows.engine.local import AutomationEngine

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from crm_workflows.core.context import ActionContext


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """A clock the test moves by hand."""
    return FakeClock()


@pytest.fixture
def engine_config() -> EngineConfig:
    """Engine configuration with short retry backoff."""
    return EngineConfig(
        poll_interval=timedelta(milliseconds=10),
        retry_base_delay=timedelta(seconds=1),
        retry_max_delay=timedelta(seconds=10),
        enqueue_retry_delay=timedelta(0),
        worker_id="worker-test",
    )


@pytest.fixture
def action_calls() -> list[ActionContext]:
    """Contexts passed to the ``send_email`` test action, in call order."""
    return []


@pytest.fixture
def actions(action_calls: list[ActionContext]) -> ActionRegistry:
    """Action registry with a recording ``send_email`` and a failing ``flaky_webhook``."""
    registry = ActionRegistry()

    @registry.action("send_email")
    async def send_email(context: ActionContext) -> dict[str, Any]:
        action_calls.append(context)
        return {"sent_to": context.entity.get("email"), "template": context.params.get("template")}

    @registry.action("flaky_webhook")
    async def flaky_webhook(context: ActionContext) -> None:
        msg = f"webhook unavailable (attempt {context.attempt})"
        raise ConnectionError(msg)

    return registry


@pytest.fixture
def engine(engine_config: EngineConfig, actions: ActionRegistry, clock: FakeClock) -> AutomationEngine:
    """In-memory automation engine driven by the fake clock."""
    return AutomationEngine(actions=actions, config=engine_config, clock=clock)


@pytest.fixture
def hot_lead_workflow() -> Workflow:
    """Lead-created workflow that emails leads scoring at least 50.

    trigger -> qualify --yes--> email -> done
                       \\--no---------------> done
    """
    return Workflow(
        name="hot_lead_followup",
        trigger_type=TriggerType.ENTITY_CREATED,
        trigger_config=TriggerConfig(entity_type="lead"),
        nodes=[
            Node(id="start", type=NodeType.TRIGGER),
            Node(
                id="qualify",
                type=NodeType.CONDITION,
                data=ConditionNodeData(condition=parse_condition("lead.score >= 50")),
            ),
            Node(
                id="email",
                type=NodeType.ACTION,
                data=ActionNodeData(action="send_email", params={"template": "hot_lead"}),
            ),
            Node(id="done", type=NodeType.END),
        ],
        edges=[
            Edge(id="e1", source="start", target="qualify"),
            Edge(id="e2", source="qualify", target="email", label="yes"),
            Edge(id="e3", source="qualify", target="done", label="no"),
            Edge(id="e4", source="email", target="done"),
        ],
    )


@pytest.fixture
async def db_engine() -> AsyncIterator[Any]:
    """Async SQLite in-memory engine sharing one connection."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    # Enable foreign keys for SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(AutomationWorkflowModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine: Any) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the in-memory database."""
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


def pytest_configure(config: Any) -> None:
    """Configure pytest with custom markers.

    Args:
        config: Pytest config object
    """
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
