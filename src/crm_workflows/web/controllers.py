"""REST API controllers for the automation engine.

This module provides three controller classes:
- EventController: Inbound CRM events
- WorkflowController: Workflow definitions, manual runs, statistics and bulk cancellation
- ExecutionController: Inspect and cancel executions
"""

from __future__ import annotations

from typing import Any, ClassVar
from uuid import UUID

from litestar import Controller, get, post
from litestar.exceptions import ValidationException
from litestar.params import Parameter
from litestar.status_codes import HTTP_200_OK, HTTP_201_CREATED, HTTP_202_ACCEPTED

from crm_workflows.core.definition import Workflow
from crm_workflows.core.types import EventKind, ExecutionStatus
from crm_workflows.engine.local import AutomationEngine  # noqa: TC001 - needed for DI
from crm_workflows.web.dto import (
    CancelledExecutionsDTO,
    CRMEventDTO,
    ExecuteWorkflowDTO,
    ExecutionDetailDTO,
    ExecutionDTO,
    ExecutionPageDTO,
    ExecutionStepDTO,
    WorkflowSummaryDTO,
)

__all__ = [
    "EventController",
    "ExecutionController",
    "WorkflowController",
]


class EventController(Controller):
    """API controller for inbound CRM events.

    Tags: Automation Events
    """

    path = "/events"
    tags: ClassVar[list[str]] = ["Automation Events"]

    @post("/", status_code=HTTP_202_ACCEPTED)
    async def deliver_event(
        self,
        data: CRMEventDTO,
        automation_engine: AutomationEngine,
    ) -> list[ExecutionDTO]:
        """Evaluate a CRM event against every matching workflow.

        Redelivering the same event is safe; duplicates are dropped.

        Args:
            data: The event.
            automation_engine: Injected automation engine.

        Returns:
            The executions created for this delivery.

        Raises:
            ValidationException: If the event kind is unknown.
        """
        try:
            event_kind = EventKind(data.event_kind)
        except ValueError as e:
            raise ValidationException(detail=f"Unknown event kind '{data.event_kind}'") from e

        executions = await automation_engine.notify(
            data.entity_type,
            event_kind,
            data.entity,
            data.occurred_at,
            previous_snapshot=data.previous,
            tag=data.tag,
            form_id=data.form_id,
            tenant_id=data.tenant_id,
            dedupe_key=data.dedupe_key,
        )
        return [ExecutionDTO.from_execution(execution) for execution in executions]


class WorkflowController(Controller):
    """API controller for workflow definitions and per-workflow operations.

    Tags: Automation Workflows
    """

    path = "/workflows"
    tags: ClassVar[list[str]] = ["Automation Workflows"]

    @get("/")
    async def list_workflows(
        self,
        automation_engine: AutomationEngine,
        active_only: bool = Parameter(
            default=False,
            description="Filter to workflows currently accepting triggers",
        ),
    ) -> list[WorkflowSummaryDTO]:
        """List saved workflows."""
        workflows = await automation_engine.workflows.list_workflows(active_only=active_only)
        return [WorkflowSummaryDTO.from_workflow(workflow) for workflow in workflows]

    @post("/", status_code=HTTP_201_CREATED)
    async def save_workflow(
        self,
        data: dict[str, Any],
        automation_engine: AutomationEngine,
    ) -> dict[str, Any]:
        """Validate and save a workflow definition.

        Args:
            data: The workflow in its JSON form.
            automation_engine: Injected automation engine.

        Returns:
            The saved workflow.

        Raises:
            ValidationException: If the payload cannot be parsed.
        """
        try:
            workflow = Workflow.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationException(detail=f"Malformed workflow: {e}") from e
        saved = await automation_engine.save_workflow(workflow)
        return saved.to_dict()

    @get("/{workflow_id:uuid}")
    async def get_workflow(
        self,
        workflow_id: UUID,
        automation_engine: AutomationEngine,
    ) -> dict[str, Any]:
        """Get a workflow definition in its JSON form."""
        workflow = await automation_engine.get_workflow(workflow_id)
        return workflow.to_dict()

    @post("/{workflow_id:uuid}/execute", status_code=HTTP_202_ACCEPTED)
    async def execute_workflow(
        self,
        workflow_id: UUID,
        data: ExecuteWorkflowDTO,
        automation_engine: AutomationEngine,
    ) -> ExecutionDTO:
        """Enqueue a manual run of a workflow.

        The run is picked up by the next scheduler tick.

        Args:
            workflow_id: The workflow to run.
            data: Trigger data and tenant.
            automation_engine: Injected automation engine.

        Returns:
            The PENDING execution.
        """
        execution = await automation_engine.execute_now(workflow_id, data.trigger_data, tenant_id=data.tenant_id)
        return ExecutionDTO.from_execution(execution)

    @get("/{workflow_id:uuid}/stats")
    async def workflow_stats(
        self,
        workflow_id: UUID,
        automation_engine: AutomationEngine,
    ) -> dict[str, int]:
        """Execution counts by status for a workflow, plus ``total``."""
        return await automation_engine.workflow_stats(workflow_id)

    @post("/{workflow_id:uuid}/cancel-executions", status_code=HTTP_200_OK)
    async def cancel_workflow_executions(
        self,
        workflow_id: UUID,
        automation_engine: AutomationEngine,
    ) -> CancelledExecutionsDTO:
        """Request cancellation of every unfinished execution of a workflow."""
        await automation_engine.get_workflow(workflow_id)
        count = await automation_engine.cancel_workflow_executions(workflow_id)
        return CancelledExecutionsDTO(workflow_id=workflow_id, count=count)


class ExecutionController(Controller):
    """API controller for executions.

    Tags: Automation Executions
    """

    path = "/executions"
    tags: ClassVar[list[str]] = ["Automation Executions"]

    @get("/")
    async def list_executions(
        self,
        automation_engine: AutomationEngine,
        workflow_id: UUID | None = Parameter(
            default=None,
            description="Filter by workflow",
        ),
        status: str | None = Parameter(
            default=None,
            description="Filter by status",
        ),
        limit: int = Parameter(
            default=50,
            ge=1,
            le=100,
            description="Maximum number of results",
        ),
        offset: int = Parameter(
            default=0,
            ge=0,
            description="Number of results to skip",
        ),
    ) -> ExecutionPageDTO:
        """List executions newest first.

        Raises:
            ValidationException: If the status filter is unknown.
        """
        try:
            execution_status = ExecutionStatus(status) if status else None
        except ValueError as e:
            raise ValidationException(detail=f"Unknown status '{status}'") from e

        executions, total = await automation_engine.list_executions(
            workflow_id,
            execution_status,
            limit=limit,
            offset=offset,
        )
        return ExecutionPageDTO(
            items=[ExecutionDTO.from_execution(execution) for execution in executions],
            total=total,
            limit=limit,
            offset=offset,
        )

    @get("/{execution_id:uuid}")
    async def get_execution(
        self,
        execution_id: UUID,
        automation_engine: AutomationEngine,
    ) -> ExecutionDetailDTO:
        """Get an execution with its audit trail.

        Args:
            execution_id: The execution ID.
            automation_engine: Injected automation engine.

        Returns:
            Execution detail DTO.
        """
        execution = await automation_engine.get_execution(execution_id)
        steps = await automation_engine.get_steps(execution_id)
        return ExecutionDetailDTO(
            execution=ExecutionDTO.from_execution(execution),
            trigger_data=execution.trigger_data,
            outputs=execution.cursor_state.outputs,
            visited=execution.cursor_state.visited,
            steps=[ExecutionStepDTO.from_step(step) for step in steps],
        )

    @post("/{execution_id:uuid}/cancel", status_code=HTTP_200_OK)
    async def cancel_execution(
        self,
        execution_id: UUID,
        automation_engine: AutomationEngine,
    ) -> ExecutionDTO:
        """Request cooperative cancellation of an execution.

        Raises:
            ExecutionAlreadyFinishedError: Mapped to 409 if it already finished.
        """
        execution = await automation_engine.cancel_execution(execution_id)
        return ExecutionDTO.from_execution(execution)
