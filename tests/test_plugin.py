"""Tests for the Litestar plugin."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import pytest
from litestar import Litestar, post
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED, HTTP_404_NOT_FOUND
from litestar.testing import AsyncTestClient

from crm_workflows import AutomationEngine, AutomationPlugin, AutomationPluginConfig
from crm_workflows.config import EngineConfig
from crm_workflows.core.types import ExecutionStatus

if TYPE_CHECKING:
    from crm_workflows.core.definition import Workflow


@post("/leads")
async def create_lead(data: dict[str, Any], automation_engine: AutomationEngine) -> dict[str, Any]:
    executions = await automation_engine.notify("lead", "created", data)
    return {"executions": [str(execution.id) for execution in executions]}


@pytest.mark.unit
class TestPluginProperties:
    """Tests for plugin property access."""

    def test_engine_property_before_init_raises(self) -> None:
        plugin = AutomationPlugin()

        with pytest.raises(RuntimeError, match="not been initialized"):
            _ = plugin.engine

    def test_default_engine(self) -> None:
        plugin = AutomationPlugin(AutomationPluginConfig(engine_config=EngineConfig(max_workers=3)))
        Litestar(plugins=[plugin])

        assert isinstance(plugin.engine, AutomationEngine)
        assert plugin.engine.config.max_workers == 3

    def test_provided_engine(self, engine: AutomationEngine) -> None:
        plugin = AutomationPlugin(AutomationPluginConfig(engine=engine))
        Litestar(plugins=[plugin])

        assert plugin.engine is engine

    def test_api_can_be_disabled(self) -> None:
        app = Litestar(plugins=[AutomationPlugin(AutomationPluginConfig(enable_api=False))])

        assert not any(route.path.startswith("/automations") for route in app.routes)

    def test_custom_prefix(self) -> None:
        app = Litestar(plugins=[AutomationPlugin(AutomationPluginConfig(api_path_prefix="/api/automations"))])

        paths = {route.path for route in app.routes}
        assert "/api/automations/events" in paths
        assert "/api/automations/executions/{execution_id:uuid}" in paths


@pytest.mark.integration
class TestPluginLifecycle:
    """Tests for startup, dependency injection and shutdown."""

    async def test_engine_injection_and_scheduler(
        self, engine: AutomationEngine, hot_lead_workflow: Workflow
    ) -> None:
        config = AutomationPluginConfig(engine=engine, workflows=[hot_lead_workflow])
        app = Litestar(route_handlers=[create_lead], plugins=[AutomationPlugin(config)])

        async with AsyncTestClient(app=app) as client:
            assert engine.scheduler.is_running
            saved = await client.get(f"/automations/workflows/{hot_lead_workflow.id}")
            assert saved.status_code == HTTP_200_OK

            response = await client.post("/leads", json={"id": "lead-1", "score": 80})
            assert response.status_code == HTTP_201_CREATED
            (execution_id,) = response.json()["executions"]

            status = None
            for _ in range(200):
                detail = await client.get(f"/automations/executions/{execution_id}")
                status = detail.json()["execution"]["status"]
                if status not in ("pending", "claimed", "running"):
                    break
                await asyncio.sleep(0.01)

        assert not engine.scheduler.is_running
        assert status == str(ExecutionStatus.COMPLETED)

    async def test_custom_dependency_key(self, engine: AutomationEngine) -> None:
        @post("/ping")
        async def ping(crm_automation: AutomationEngine) -> dict[str, int]:
            return {"actions": len(crm_automation.actions)}

        config = AutomationPluginConfig(
            engine=engine, dependency_key_engine="crm_automation", run_scheduler=False, enable_api=False
        )
        app = Litestar(route_handlers=[ping], plugins=[AutomationPlugin(config)])

        async with AsyncTestClient(app=app) as client:
            response = await client.post("/ping")
            missing = await client.get("/automations/workflows")

        assert response.json() == {"actions": 2}
        assert missing.status_code == HTTP_404_NOT_FOUND
        assert not engine.scheduler.is_running
