"""Core protocols for crm-workflows.

This module defines the Protocol-based interfaces between the engine and its
collaborators: the durable execution store, the source of workflow definitions
and action handlers. Components receive implementations through their
constructors; nothing is looked up from process-wide state.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Mapping
    from datetime import datetime, timedelta
    from uuid import UUID

    from crm_workflows.core.context import ActionContext
    from crm_workflows.core.definition import Workflow
    from crm_workflows.core.models import Execution, ExecutionStep
    from crm_workflows.core.types import ExecutionStatus, StepOutcome, TriggerType


__all__ = ["ActionHandler", "ExecutionStore", "WorkflowSource"]


@runtime_checkable
class ActionHandler(Protocol):
    """Protocol for action capabilities invoked by action nodes.

    A handler receives the :class:`ActionContext` of one attempt and returns an
    output recorded on the step. It may be a plain function or a coroutine
    function. Raising :class:`~crm_workflows.exceptions.ConfigurationError`
    fails the execution at once; any other exception is retried.

    Example:
        >>> async def create_task(context: ActionContext) -> dict:
        ...     task = await tasks.create(owner=context.entity["owner_id"], title=context.params["title"])
        ...     return {"task_id": task.id}
    """

    def __call__(self, context: ActionContext) -> Any | Awaitable[Any]:
        """Run the action."""
        ...


@runtime_checkable
class WorkflowSource(Protocol):
    """Protocol for reading (and, for the definition API, writing) workflows."""

    async def get_workflow(self, workflow_id: UUID) -> Workflow | None:
        """Get a workflow by id, or None if it does not exist."""
        ...

    async def list_workflows(self, *, active_only: bool = False) -> list[Workflow]:
        """List workflows; with ``active_only`` only those accepting triggers."""
        ...

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        """Create or replace a workflow."""
        ...

    async def delete_workflow(self, workflow_id: UUID) -> None:
        """Delete a workflow definition."""
        ...


@runtime_checkable
class ExecutionStore(Protocol):
    """Protocol for the durable execution queue and audit trail.

    Every status change goes through :meth:`transition`, a compare-and-swap on
    the stored status. :meth:`claim_pending` is the single atomic primitive that
    hands executions to workers; at most one worker holds an unexpired lease on
    an execution at any time.
    """

    async def enqueue(self, execution: Execution) -> bool:
        """Insert a PENDING execution.

        Returns:
            False if an execution with the same ``(workflow_id, trigger_type,
            dedupe_key)`` already exists and nothing was inserted.
        """
        ...

    async def claim_pending(
        self,
        limit: int,
        lease_duration: timedelta,
        *,
        owner: str,
        now: datetime | None = None,
        workflow_limits: Mapping[UUID, int] | None = None,
    ) -> list[Execution]:
        """Atomically claim up to ``limit`` executions, oldest first.

        Claimable rows are PENDING ones, WAITING ones that are due or have a
        cancellation request, and CLAIMED/RUNNING ones whose lease expired.
        Claimed rows move to CLAIMED with a fresh lease owned by ``owner``.

        Args:
            limit: Maximum number of rows to claim.
            lease_duration: Length of the lease granted.
            owner: Worker id recorded as lease owner.
            now: Current time.
            workflow_limits: Remaining slots per workflow id; workflows absent
                from the mapping are only bounded by ``limit``. PENDING and
                WAITING rows with a cancellation request ignore these limits.

        Returns:
            The claimed executions, ordered by ``created_at`` then ``id``.
        """
        ...

    async def heartbeat(
        self,
        execution_id: UUID,
        lease_duration: timedelta,
        *,
        owner: str,
        now: datetime | None = None,
    ) -> bool:
        """Extend the lease held by ``owner``.

        Returns:
            False if ``owner`` no longer holds the lease.
        """
        ...

    async def transition(
        self,
        execution_id: UUID,
        from_status: ExecutionStatus,
        to_status: ExecutionStatus,
        *,
        owner: str | None = None,
        now: datetime | None = None,
        **fields: Any,
    ) -> Execution:
        """Compare-and-swap the status of an execution and update ``fields``.

        Raises:
            ClaimConflictError: If the stored status is not ``from_status``, or
                ``owner`` is given and does not hold the lease.
        """
        ...

    async def get(self, execution_id: UUID) -> Execution | None:
        """Get an execution by id."""
        ...

    async def list_executions(
        self,
        workflow_id: UUID | None = None,
        status: ExecutionStatus | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Execution], int]:
        """List executions newest first with the total count."""
        ...

    async def count_active_by_workflow(self, now: datetime | None = None) -> dict[UUID, int]:
        """Count CLAIMED/RUNNING executions with an unexpired lease, per workflow."""
        ...

    async def request_cancel(self, execution_id: UUID) -> Execution:
        """Set the cancellation flag of a non-terminal execution.

        Raises:
            ExecutionNotFoundError: If the execution does not exist.
            ExecutionAlreadyFinishedError: If it already reached a terminal status.
        """
        ...

    async def request_cancel_for_workflow(self, workflow_id: UUID) -> int:
        """Set the cancellation flag on every non-terminal execution of a workflow."""
        ...

    async def latest_execution(self, workflow_id: UUID, trigger_type: TriggerType) -> Execution | None:
        """Most recently created execution of a workflow for a trigger type."""
        ...

    async def status_counts(self, workflow_id: UUID) -> dict[ExecutionStatus, int]:
        """Number of executions of a workflow per status."""
        ...

    async def add_step(self, step: ExecutionStep) -> ExecutionStep:
        """Append an audit step."""
        ...

    async def finish_step(
        self,
        step_id: UUID,
        outcome: StepOutcome,
        *,
        finished_at: datetime,
        error_detail: str | None = None,
        output: Any = None,
    ) -> None:
        """Close an open audit step with its outcome."""
        ...

    async def list_steps(self, execution_id: UUID) -> list[ExecutionStep]:
        """Steps of an execution ordered by ``started_at``."""
        ...

    async def interrupt_open_steps(self, execution_id: UUID, now: datetime | None = None) -> int:
        """Close every open step of an execution as ``interrupted``."""
        ...
