"""Automation engine facade.

This module wires the trigger evaluator, the scheduler, the graph walker and
the retry manager around an execution store and a workflow source, and exposes
the engine's inbound, definition and inspection API in one object.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from crm_workflows.config import EngineConfig
from crm_workflows.core.models import utcnow
from crm_workflows.core.types import ExecutionStatus
from crm_workflows.engine.actions import ActionRegistry
from crm_workflows.engine.registry import WorkflowRegistry
from crm_workflows.engine.retry import RetryManager
from crm_workflows.engine.scheduler import Scheduler
from crm_workflows.engine.triggers import TriggerEvaluator
from crm_workflows.engine.walker import GraphWalker
from crm_workflows.exceptions import (
    ExecutionNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from crm_workflows.store.memory import InMemoryExecutionStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime
    from uuid import UUID

    from crm_workflows.core.definition import Workflow
    from crm_workflows.core.models import Execution, ExecutionStep
    from crm_workflows.core.protocols import ExecutionStore, WorkflowSource
    from crm_workflows.core.types import EventKind

__all__ = ["AutomationEngine"]

logger = structlog.get_logger(__name__)


class AutomationEngine:
    """Single entry point to the automation engine.

    All collaborators are injected; defaults give a self-contained in-memory
    engine suitable for development and tests.

    Attributes:
        store: Execution store.
        workflows: Workflow source.
        actions: Action capability registry.
        config: Engine configuration.
        evaluator: Trigger evaluator.
        walker: Graph walker.
        scheduler: Polling scheduler.

    Example:
        >>> engine = AutomationEngine()
        >>> @engine.actions.action("send_email")
        ... async def send_email(context):
        ...     return {"sent": True}
        >>> await engine.save_workflow(workflow)
        >>> await engine.notify("lead", "created", {"id": "lead-1", "score": 80})
        >>> await engine.tick()
    """

    def __init__(
        self,
        store: ExecutionStore | None = None,
        workflows: WorkflowSource | None = None,
        actions: ActionRegistry | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Execution store; defaults to an in-memory store.
            workflows: Workflow source; defaults to an in-memory registry.
            actions: Action registry; defaults to an empty registry.
            config: Engine configuration.
            clock: Source of the current time.
        """
        self.config = config or EngineConfig()
        self.config.validate()
        self.store: ExecutionStore = store if store is not None else InMemoryExecutionStore()
        self.workflows: WorkflowSource = workflows if workflows is not None else WorkflowRegistry()
        self.actions = actions if actions is not None else ActionRegistry()
        self.clock = clock
        self.evaluator = TriggerEvaluator(self.store, self.workflows, self.config, clock)
        self.walker = GraphWalker(self.store, self.actions, self.config, RetryManager(self.config), clock)
        self.scheduler = Scheduler(self.store, self.workflows, self.walker, self.evaluator, self.config, clock)

    # -------------------------------------------------------------------------
    # Definition API
    # -------------------------------------------------------------------------

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Validate and store a workflow definition.

        Raises:
            WorkflowValidationError: If the definition is invalid.
        """
        errors = workflow.validate(known_actions=set(self.actions))
        if errors:
            raise WorkflowValidationError(errors)
        saved = await self.workflows.save_workflow(workflow)
        logger.info("workflow saved", workflow_id=str(saved.id), name=saved.name)
        return saved

    async def get_workflow(self, workflow_id: UUID) -> Workflow:
        """Get a workflow definition.

        Raises:
            WorkflowNotFoundError: If it does not exist.
        """
        workflow = await self.workflows.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        return workflow

    # -------------------------------------------------------------------------
    # Inbound API
    # -------------------------------------------------------------------------

    async def notify(
        self,
        entity_type: str,
        event_kind: EventKind | str,
        entity_snapshot: dict[str, Any],
        occurred_at: datetime | None = None,
        **kwargs: Any,
    ) -> list[Execution]:
        """Deliver a CRM event; see :meth:`TriggerEvaluator.notify`."""
        return await self.evaluator.notify(entity_type, event_kind, entity_snapshot, occurred_at, **kwargs)

    async def execute_now(
        self, workflow_id: UUID, trigger_data: dict[str, Any] | None = None, *, tenant_id: str | None = None
    ) -> Execution:
        """Create a manual execution of a workflow."""
        return await self.evaluator.execute_now(workflow_id, trigger_data, tenant_id=tenant_id)

    # -------------------------------------------------------------------------
    # Inspection API
    # -------------------------------------------------------------------------

    async def get_execution(self, execution_id: UUID) -> Execution:
        """Get an execution.

        Raises:
            ExecutionNotFoundError: If it does not exist.
        """
        execution = await self.store.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return execution

    async def get_steps(self, execution_id: UUID) -> list[ExecutionStep]:
        """Audit trail of an execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist.
        """
        await self.get_execution(execution_id)
        return await self.store.list_steps(execution_id)

    async def list_executions(
        self,
        workflow_id: UUID | None = None,
        status: ExecutionStatus | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Execution], int]:
        """List executions newest first, with the total count."""
        return await self.store.list_executions(workflow_id, status, limit=limit, offset=offset)

    async def cancel_execution(self, execution_id: UUID) -> Execution:
        """Request cooperative cancellation of an execution.

        The walker stops before the next node; a PENDING or WAITING execution is
        cancelled on the next scheduler tick.

        Raises:
            ExecutionNotFoundError: If the execution does not exist.
            ExecutionAlreadyFinishedError: If it already finished.
        """
        execution = await self.store.request_cancel(execution_id)
        logger.info("cancellation requested", execution_id=str(execution_id), status=str(execution.status))
        return execution

    async def cancel_workflow_executions(self, workflow_id: UUID) -> int:
        """Request cancellation of every unfinished execution of a workflow."""
        count = await self.store.request_cancel_for_workflow(workflow_id)
        logger.info("cancellation requested for workflow", workflow_id=str(workflow_id), count=count)
        return count

    async def workflow_stats(self, workflow_id: UUID) -> dict[str, int]:
        """Execution counts by status for a workflow, plus a total.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
        """
        await self.get_workflow(workflow_id)
        counts = await self.store.status_counts(workflow_id)
        stats = {str(status): counts.get(status, 0) for status in ExecutionStatus}
        stats["total"] = sum(counts.values())
        return stats

    # -------------------------------------------------------------------------
    # Scheduling
    # -------------------------------------------------------------------------

    async def tick(self) -> list[Execution]:
        """Run one scheduling pass and return the executions dispatched."""
        return await self.scheduler.tick()

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight executions to finish."""
        await self.scheduler.drain(timeout)

    async def run_until_idle(self, max_ticks: int = 100) -> None:
        """Tick and drain until a pass claims nothing.

        Executions parked in WAITING are left alone until their wake time.
        """
        for _ in range(max_ticks):
            claimed = await self.tick()
            await self.drain()
            if not claimed:
                return

    def start(self) -> None:
        """Start the scheduler loop in the background."""
        self.scheduler.start()

    async def stop(self, *, drain: bool = True, timeout: float | None = None) -> None:
        """Stop the scheduler loop."""
        await self.scheduler.stop(drain=drain, timeout=timeout)
