"""In-memory execution store.

A single-process implementation of the ExecutionStore protocol, used by tests
and by embedded deployments that do not need durability. All operations are
serialized by one asyncio lock, which makes every claim and transition atomic.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from crm_workflows.core.models import utcnow
from crm_workflows.core.types import (
    ACTIVE_STATUSES,
    QUEUED_STATUSES,
    TERMINAL_STATUSES,
    ExecutionStatus,
    StepOutcome,
)
from crm_workflows.exceptions import (
    ClaimConflictError,
    ExecutionAlreadyFinishedError,
    ExecutionNotFoundError,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime, timedelta
    from uuid import UUID

    from crm_workflows.core.models import Execution, ExecutionStep
    from crm_workflows.core.types import TriggerType

__all__ = ["InMemoryExecutionStore", "is_claimable"]


def is_claimable(execution: Execution, now: datetime) -> bool:
    """Whether a claim at ``now`` may take the execution."""
    if execution.status == ExecutionStatus.PENDING:
        return True
    if execution.status == ExecutionStatus.WAITING:
        return execution.cancel_requested or execution.wake_at is None or execution.wake_at <= now
    if execution.status in ACTIVE_STATUSES:
        return execution.lease_expires_at is None or execution.lease_expires_at <= now
    return False


class InMemoryExecutionStore:
    """ExecutionStore keeping rows in dictionaries.

    Rows are deep-copied on the way in and out so callers never share mutable
    state with the store.

    Example:
        >>> store = InMemoryExecutionStore()
        >>> await store.enqueue(Execution(workflow_id=wf.id, trigger_type=TriggerType.MANUAL))
        True
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._executions: dict[UUID, Execution] = {}
        self._dedupe: dict[tuple[UUID, str, str], UUID] = {}
        self._steps: dict[UUID, ExecutionStep] = {}

    async def enqueue(self, execution: Execution) -> bool:
        async with self._lock:
            key = None
            if execution.dedupe_key is not None:
                key = (execution.workflow_id, str(execution.trigger_type), execution.dedupe_key)
                if key in self._dedupe:
                    return False
            row = copy.deepcopy(execution)
            row.status = ExecutionStatus.PENDING
            self._executions[row.id] = row
            if key is not None:
                self._dedupe[key] = row.id
            return True

    async def claim_pending(
        self,
        limit: int,
        lease_duration: timedelta,
        *,
        owner: str,
        now: datetime | None = None,
        workflow_limits: Mapping[UUID, int] | None = None,
    ) -> list[Execution]:
        now = now or utcnow()
        remaining = dict(workflow_limits or {})
        claimed: list[Execution] = []
        if limit <= 0:
            return claimed
        async with self._lock:
            candidates = sorted(
                (row for row in self._executions.values() if is_claimable(row, now)),
                key=lambda row: (row.created_at, str(row.id)),
            )
            for row in candidates:
                if len(claimed) >= limit:
                    break
                # Cancelling a queued row takes no workflow slot.
                cancel_only = row.cancel_requested and row.status in QUEUED_STATUSES
                if row.workflow_id in remaining and not cancel_only:
                    if remaining[row.workflow_id] <= 0:
                        continue
                    remaining[row.workflow_id] -= 1
                row.status = ExecutionStatus.CLAIMED
                row.claimed_at = now
                row.lease_owner = owner
                row.lease_expires_at = now + lease_duration
                row.updated_at = now
                claimed.append(copy.deepcopy(row))
        return claimed

    async def heartbeat(
        self,
        execution_id: UUID,
        lease_duration: timedelta,
        *,
        owner: str,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        async with self._lock:
            row = self._executions.get(execution_id)
            if row is None or row.lease_owner != owner or row.status not in ACTIVE_STATUSES:
                return False
            row.lease_expires_at = now + lease_duration
            row.updated_at = now
            return True

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
        now = now or utcnow()
        async with self._lock:
            row = self._executions.get(execution_id)
            if row is None:
                raise ClaimConflictError(execution_id, str(from_status))
            if row.status != from_status or (owner is not None and row.lease_owner != owner):
                raise ClaimConflictError(execution_id, str(from_status), str(row.status))
            for name, value in fields.items():
                if not hasattr(row, name):
                    msg = f"Execution has no field '{name}'"
                    raise AttributeError(msg)
                setattr(row, name, copy.deepcopy(value))
            row.status = to_status
            row.updated_at = now
            return copy.deepcopy(row)

    async def get(self, execution_id: UUID) -> Execution | None:
        async with self._lock:
            row = self._executions.get(execution_id)
            return copy.deepcopy(row) if row is not None else None

    async def list_executions(
        self,
        workflow_id: UUID | None = None,
        status: ExecutionStatus | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Execution], int]:
        async with self._lock:
            rows = [
                row
                for row in self._executions.values()
                if (workflow_id is None or row.workflow_id == workflow_id) and (status is None or row.status == status)
            ]
            rows.sort(key=lambda row: (row.created_at, str(row.id)), reverse=True)
            return [copy.deepcopy(row) for row in rows[offset : offset + limit]], len(rows)

    async def count_active_by_workflow(self, now: datetime | None = None) -> dict[UUID, int]:
        now = now or utcnow()
        counts: dict[UUID, int] = {}
        async with self._lock:
            for row in self._executions.values():
                if row.status in ACTIVE_STATUSES and row.lease_expires_at is not None and row.lease_expires_at > now:
                    counts[row.workflow_id] = counts.get(row.workflow_id, 0) + 1
        return counts

    async def request_cancel(self, execution_id: UUID) -> Execution:
        async with self._lock:
            row = self._executions.get(execution_id)
            if row is None:
                raise ExecutionNotFoundError(execution_id)
            if row.status in TERMINAL_STATUSES:
                raise ExecutionAlreadyFinishedError(execution_id, str(row.status))
            row.cancel_requested = True
            row.updated_at = utcnow()
            return copy.deepcopy(row)

    async def request_cancel_for_workflow(self, workflow_id: UUID) -> int:
        count = 0
        async with self._lock:
            for row in self._executions.values():
                if row.workflow_id == workflow_id and row.status not in TERMINAL_STATUSES and not row.cancel_requested:
                    row.cancel_requested = True
                    row.updated_at = utcnow()
                    count += 1
        return count

    async def latest_execution(self, workflow_id: UUID, trigger_type: TriggerType) -> Execution | None:
        async with self._lock:
            rows = [
                row
                for row in self._executions.values()
                if row.workflow_id == workflow_id and row.trigger_type == trigger_type
            ]
            if not rows:
                return None
            return copy.deepcopy(max(rows, key=lambda row: (row.created_at, str(row.id))))

    async def status_counts(self, workflow_id: UUID) -> dict[ExecutionStatus, int]:
        counts = dict.fromkeys(ExecutionStatus, 0)
        async with self._lock:
            for row in self._executions.values():
                if row.workflow_id == workflow_id:
                    counts[row.status] += 1
        return counts

    async def add_step(self, step: ExecutionStep) -> ExecutionStep:
        async with self._lock:
            self._steps[step.id] = copy.deepcopy(step)
            return copy.deepcopy(step)

    async def finish_step(
        self,
        step_id: UUID,
        outcome: StepOutcome,
        *,
        finished_at: datetime,
        error_detail: str | None = None,
        output: Any = None,
    ) -> None:
        async with self._lock:
            step = self._steps.get(step_id)
            if step is None:
                return
            self._steps[step_id] = replace(
                step,
                outcome=outcome,
                finished_at=finished_at,
                error_detail=error_detail,
                output=copy.deepcopy(output),
            )

    async def list_steps(self, execution_id: UUID) -> list[ExecutionStep]:
        async with self._lock:
            steps = [step for step in self._steps.values() if step.execution_id == execution_id]
        # Insertion order breaks ties between steps started in the same instant.
        return [copy.deepcopy(step) for step in sorted(steps, key=lambda step: step.started_at)]

    async def interrupt_open_steps(self, execution_id: UUID, now: datetime | None = None) -> int:
        now = now or utcnow()
        count = 0
        async with self._lock:
            for step_id, step in self._steps.items():
                if step.execution_id == execution_id and step.outcome is None:
                    self._steps[step_id] = replace(step, outcome=StepOutcome.INTERRUPTED, finished_at=now)
                    count += 1
        return count
