"""Data Transfer Objects for the automation web API.

This module defines DTOs for serializing and deserializing automation data
in REST API requests and responses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from crm_workflows.core.definition import Workflow
    from crm_workflows.core.models import Execution, ExecutionStep

__all__ = [
    "CancelledExecutionsDTO",
    "CRMEventDTO",
    "ExecuteWorkflowDTO",
    "ExecutionDTO",
    "ExecutionDetailDTO",
    "ExecutionPageDTO",
    "ExecutionStepDTO",
    "WorkflowSummaryDTO",
]


@dataclass
class CRMEventDTO:
    """DTO for a CRM event delivered over HTTP.

    Attributes:
        entity_type: Kind of entity (``lead``, ``contact``...).
        event_kind: ``created``, ``updated``, ``tag_applied`` or ``form_submitted``.
        entity: Entity snapshot after the change.
        occurred_at: Commit time of the change, if known.
        previous: Entity snapshot before an update.
        tag: Applied tag for tag events.
        form_id: Submitted form for form events.
        tenant_id: Owning tenant.
        dedupe_key: Explicit idempotence key.
    """

    entity_type: str
    event_kind: str
    entity: dict[str, Any]
    occurred_at: datetime | None = None
    previous: dict[str, Any] | None = None
    tag: str | None = None
    form_id: str | None = None
    tenant_id: str | None = None
    dedupe_key: str | None = None


@dataclass
class ExecuteWorkflowDTO:
    """DTO for a manual run.

    Attributes:
        trigger_data: Data exposed to the run as its trigger snapshot.
        tenant_id: Optional tenant ID for multi-tenancy.
    """

    trigger_data: dict[str, Any] | None = None
    tenant_id: str | None = None


@dataclass
class ExecutionStepDTO:
    """DTO for one audit step.

    Attributes:
        id: Step ID.
        node_id: Node visited.
        node_type: Type of the node.
        attempt_number: 1-based attempt counter.
        outcome: ``success``, ``failure``, ``skipped``, ``interrupted`` or None while open.
        started_at: When the attempt started.
        finished_at: When it finished.
        error_detail: Error message of a failed attempt.
        output: Recorded output.
    """

    id: UUID
    node_id: str
    node_type: str
    attempt_number: int
    outcome: str | None
    started_at: datetime
    finished_at: datetime | None = None
    error_detail: str | None = None
    output: Any = None

    @classmethod
    def from_step(cls, step: ExecutionStep) -> ExecutionStepDTO:
        return cls(
            id=step.id,
            node_id=step.node_id,
            node_type=step.node_type,
            attempt_number=step.attempt_number,
            outcome=str(step.outcome) if step.outcome else None,
            started_at=step.started_at,
            finished_at=step.finished_at,
            error_detail=step.error_detail,
            output=step.output,
        )


@dataclass
class ExecutionDTO:
    """DTO for execution summary information.

    Attributes:
        id: Execution ID.
        workflow_id: Workflow the execution runs.
        status: Lifecycle status.
        trigger_type: Trigger that created it.
        current_nodes: Nodes the active cursors sit on.
        created_at: When it was enqueued.
        started_at: When the walker first ran.
        completed_at: When it finished.
        wake_at: When a WAITING execution becomes due.
        cancel_requested: Whether cancellation was requested.
        error: Error detail of a failed execution.
        error_kind: ``configuration``, ``transient`` or ``internal``.
        failed_node_id: Node that failed it.
    """

    id: UUID
    workflow_id: UUID
    status: str
    trigger_type: str
    current_nodes: list[str]
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
    wake_at: datetime | None = None
    cancel_requested: bool = False
    error: str | None = None
    error_kind: str | None = None
    failed_node_id: str | None = None

    @classmethod
    def from_execution(cls, execution: Execution) -> ExecutionDTO:
        return cls(
            id=execution.id,
            workflow_id=execution.workflow_id,
            status=str(execution.status),
            trigger_type=str(execution.trigger_type),
            current_nodes=execution.cursor_state.node_ids,
            created_at=execution.created_at,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            wake_at=execution.wake_at,
            cancel_requested=execution.cancel_requested,
            error=execution.error,
            error_kind=str(execution.error_kind) if execution.error_kind else None,
            failed_node_id=execution.failed_node_id,
        )


@dataclass
class ExecutionDetailDTO:
    """DTO for detailed execution information, including the audit trail.

    Attributes:
        execution: Execution summary.
        trigger_data: Snapshot of the triggering event.
        outputs: Action outputs collected so far.
        visited: Nodes completed, in completion order.
        steps: Audit steps ordered by start time.
    """

    execution: ExecutionDTO
    trigger_data: dict[str, Any]
    outputs: dict[str, Any]
    visited: list[str]
    steps: list[ExecutionStepDTO] = field(default_factory=list)


@dataclass
class ExecutionPageDTO:
    """DTO for a page of executions.

    Attributes:
        items: Executions on this page, newest first.
        total: Number of executions matching the filters.
        limit: Page size.
        offset: Number of executions skipped.
    """

    items: list[ExecutionDTO]
    total: int
    limit: int
    offset: int


@dataclass
class CancelledExecutionsDTO:
    """DTO for a bulk cancellation result.

    Attributes:
        workflow_id: Workflow whose executions were flagged.
        count: Number of executions flagged.
    """

    workflow_id: UUID
    count: int


@dataclass
class WorkflowSummaryDTO:
    """DTO for workflow summary information.

    Attributes:
        id: Workflow ID.
        name: Workflow name.
        trigger_type: Trigger kind.
        is_active: Whether triggers are evaluated.
        is_paused: Whether the workflow is paused.
        node_count: Number of nodes in the graph.
    """

    id: UUID
    name: str
    trigger_type: str
    is_active: bool
    is_paused: bool
    node_count: int

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> WorkflowSummaryDTO:
        return cls(
            id=workflow.id,
            name=workflow.name,
            trigger_type=str(workflow.trigger_type),
            is_active=workflow.is_active,
            is_paused=workflow.is_paused,
            node_count=len(workflow.nodes),
        )
