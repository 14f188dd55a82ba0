"""Litestar plugin for the automation engine.

This module provides the AutomationPlugin, which wires an AutomationEngine
into a Litestar application: dependency injection, the REST API, exception
mapping and the scheduler loop's lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from litestar.di import Provide
from litestar.plugins import InitPluginProtocol

from crm_workflows.engine.local import AutomationEngine

if TYPE_CHECKING:
    from litestar import Litestar
    from litestar.config.app import AppConfig

    from crm_workflows.config import EngineConfig
    from crm_workflows.core.definition import Workflow

__all__ = ["AutomationPlugin", "AutomationPluginConfig"]

logger = structlog.get_logger(__name__)


@dataclass
class AutomationPluginConfig:
    """Configuration for the AutomationPlugin.

    Attributes:
        engine: Optional pre-configured AutomationEngine. If not provided,
            an in-memory engine is created from ``engine_config``.
        engine_config: Configuration for the engine created by the plugin.
        workflows: Workflows saved on app startup.
        run_scheduler: Whether to run the scheduler loop between app startup
            and shutdown. Disable it to drive ``tick()`` by hand.
        shutdown_timeout: Maximum seconds to wait for in-flight executions on shutdown.
        dependency_key_engine: The key used for dependency injection of
            the engine. Defaults to "automation_engine".
        enable_api: Whether to enable the REST API endpoints. Defaults to True.
        api_path_prefix: URL path prefix for all automation API endpoints.
            Defaults to "/automations".
        api_guards: List of Litestar guards to apply to all automation API endpoints.
        api_tags: OpenAPI tags to apply to automation API endpoints.
        include_api_in_schema: Whether to include API endpoints in OpenAPI schema.
            Defaults to True.
    """

    engine: AutomationEngine | None = None
    engine_config: EngineConfig | None = None
    workflows: list[Workflow] = field(default_factory=list)
    run_scheduler: bool = True
    shutdown_timeout: float | None = 30.0
    dependency_key_engine: str = "automation_engine"
    enable_api: bool = True
    api_path_prefix: str = "/automations"
    api_guards: list[Any] = field(default_factory=list)
    api_tags: list[str] = field(default_factory=lambda: ["Automations"])
    include_api_in_schema: bool = True


class AutomationPlugin(InitPluginProtocol):
    """Litestar plugin for CRM workflow automation.

    Example:
        Basic usage::

            from litestar import Litestar
            from crm_workflows import AutomationEngine, AutomationPlugin, AutomationPluginConfig

            engine = AutomationEngine()


            @engine.actions.action("send_email")
            async def send_email(context):
                await mailer.send(to=context.entity["email"], template=context.params["template"])


            app = Litestar(plugins=[AutomationPlugin(config=AutomationPluginConfig(engine=engine))])

        Using the engine in a route handler::

            @post("/leads")
            async def create_lead(data: LeadIn, automation_engine: AutomationEngine) -> Lead:
                lead = await leads.create(data)
                await automation_engine.notify("lead", "created", lead.to_dict())
                return lead
    """

    __slots__ = ("_config", "_engine")

    def __init__(self, config: AutomationPluginConfig | None = None) -> None:
        """Initialize the plugin.

        Args:
            config: Optional configuration for the plugin.
        """
        self._config = config or AutomationPluginConfig()
        self._engine: AutomationEngine | None = None

    @property
    def engine(self) -> AutomationEngine:
        """Get the automation engine.

        Raises:
            RuntimeError: If accessed before plugin initialization.
        """
        if self._engine is None:
            msg = "AutomationPlugin has not been initialized. Access engine after app startup."
            raise RuntimeError(msg)
        return self._engine

    def on_app_init(self, app_config: AppConfig) -> AppConfig:
        """Register the engine with the Litestar app.

        This method:
        1. Creates or uses the provided AutomationEngine
        2. Adds the engine dependency provider
        3. Adds startup and shutdown hooks for workflows and the scheduler
        4. Optionally registers the REST API controllers and exception handlers

        Args:
            app_config: The Litestar application configuration.

        Returns:
            The modified application configuration.
        """
        self._engine = self._config.engine or AutomationEngine(config=self._config.engine_config)

        def provide_engine() -> AutomationEngine:
            return self._engine  # type: ignore[return-value]

        app_config.dependencies[self._config.dependency_key_engine] = Provide(
            provide_engine,
            sync_to_thread=False,
        )
        app_config.on_startup.append(self._on_startup)
        app_config.on_shutdown.append(self._on_shutdown)

        if self._config.enable_api:
            from litestar import Router

            from crm_workflows.web.controllers import (
                EventController,
                ExecutionController,
                WorkflowController,
            )
            from crm_workflows.web.exceptions import exception_handlers

            automation_router = Router(
                path=self._config.api_path_prefix,
                route_handlers=[EventController, WorkflowController, ExecutionController],
                guards=self._config.api_guards,
                tags=self._config.api_tags,
                include_in_schema=self._config.include_api_in_schema,
            )
            app_config.route_handlers.append(automation_router)
            for exc_type, handler in exception_handlers.items():
                app_config.exception_handlers.setdefault(exc_type, handler)

        return app_config

    async def _on_startup(self, app: Litestar) -> None:
        engine = self.engine
        for workflow in self._config.workflows:
            await engine.save_workflow(workflow)
        if self._config.run_scheduler:
            engine.start()
        logger.info(
            "automation plugin started",
            workflows=len(self._config.workflows),
            scheduler=self._config.run_scheduler,
        )

    async def _on_shutdown(self, app: Litestar) -> None:
        if self._engine is not None and self._engine.scheduler.is_running:
            await self._engine.stop(drain=True, timeout=self._config.shutdown_timeout)
        logger.info("automation plugin stopped")
