"""SQLAlchemy-backed execution store and workflow source.

Each operation runs in its own short transaction opened from an
``async_sessionmaker``, so a worker never holds a database transaction open
while an action runs. Claims lock candidate rows with ``FOR UPDATE SKIP
LOCKED`` where the database supports it and then move them to CLAIMED with a
conditional update, which keeps claims atomic across replicas.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog
from advanced_alchemy.exceptions import IntegrityError as RepositoryIntegrityError
from sqlalchemy.exc import IntegrityError

from crm_workflows.core.definition import Workflow
from crm_workflows.core.models import CursorState, Execution, ExecutionStep, json_safe, utcnow
from crm_workflows.core.types import TERMINAL_STATUSES, ExecutionStatus, StepOutcome
from crm_workflows.db.models import (
    AutomationExecutionModel,
    AutomationExecutionStepModel,
    AutomationWorkflowModel,
)
from crm_workflows.db.repositories import (
    AutomationExecutionRepository,
    AutomationExecutionStepRepository,
    AutomationWorkflowRepository,
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

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from crm_workflows.core.types import TriggerType

__all__ = ["SQLAlchemyExecutionStore", "SQLAlchemyWorkflowSource"]

logger = structlog.get_logger(__name__)

_EXECUTION_COLUMNS = frozenset(
    {
        "trigger_data",
        "dedupe_key",
        "cursor_state",
        "claimed_at",
        "started_at",
        "completed_at",
        "wake_at",
        "lease_owner",
        "lease_expires_at",
        "cancel_requested",
        "error",
        "error_kind",
        "failed_node_id",
        "tenant_id",
    }
)


def execution_from_model(model: AutomationExecutionModel) -> Execution:
    return Execution(
        id=model.id,
        workflow_id=model.workflow_id,
        trigger_type=model.trigger_type,
        trigger_data=dict(model.trigger_data or {}),
        dedupe_key=model.dedupe_key,
        status=model.status,
        cursor_state=CursorState.from_dict(model.cursor_state),
        created_at=model.created_at,
        claimed_at=model.claimed_at,
        started_at=model.started_at,
        completed_at=model.completed_at,
        updated_at=model.updated_at,
        wake_at=model.wake_at,
        lease_owner=model.lease_owner,
        lease_expires_at=model.lease_expires_at,
        cancel_requested=model.cancel_requested,
        error=model.error,
        error_kind=model.error_kind,
        failed_node_id=model.failed_node_id,
        tenant_id=model.tenant_id,
    )


def execution_to_model(execution: Execution) -> AutomationExecutionModel:
    return AutomationExecutionModel(
        id=execution.id,
        workflow_id=execution.workflow_id,
        trigger_type=execution.trigger_type,
        trigger_data=json_safe(execution.trigger_data),
        dedupe_key=execution.dedupe_key,
        status=ExecutionStatus.PENDING,
        cursor_state=execution.cursor_state.to_dict(),
        created_at=execution.created_at,
        updated_at=execution.updated_at,
        wake_at=execution.wake_at,
        cancel_requested=execution.cancel_requested,
        tenant_id=execution.tenant_id,
    )


def step_from_model(model: AutomationExecutionStepModel) -> ExecutionStep:
    return ExecutionStep(
        id=model.id,
        execution_id=model.execution_id,
        node_id=model.node_id,
        node_type=model.node_type,
        attempt_number=model.attempt_number,
        started_at=model.started_at,
        finished_at=model.finished_at,
        outcome=model.outcome,
        error_detail=model.error_detail,
        output=model.output,
    )


def workflow_from_model(model: AutomationWorkflowModel) -> Workflow:
    return Workflow.from_dict(
        {
            "id": model.id,
            "name": model.name,
            "description": model.description,
            "trigger_type": model.trigger_type,
            "trigger_config": model.trigger_config,
            "nodes": model.nodes,
            "edges": model.edges,
            "execution_mode": model.execution_mode,
            "max_concurrent_executions": model.max_concurrent_executions,
            "max_retries": model.max_retries,
            "parallel_failure_mode": model.parallel_failure_mode,
            "is_active": model.is_active,
            "is_paused": model.is_paused,
            "tenant_id": model.tenant_id,
            "created_at": model.created_at,
            "updated_at": model.updated_at,
        }
    )


def _workflow_columns(workflow: Workflow) -> dict[str, Any]:
    data = workflow.to_dict()
    return {
        "name": workflow.name,
        "description": workflow.description or None,
        "trigger_type": workflow.trigger_type,
        "trigger_config": data["trigger_config"],
        "nodes": data["nodes"],
        "edges": data["edges"],
        "execution_mode": workflow.execution_mode,
        "max_concurrent_executions": workflow.max_concurrent_executions,
        "max_retries": workflow.max_retries,
        "parallel_failure_mode": workflow.parallel_failure_mode,
        "is_active": workflow.is_active,
        "is_paused": workflow.is_paused,
        "tenant_id": workflow.tenant_id,
    }


def _column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, value in fields.items():
        if name not in _EXECUTION_COLUMNS:
            msg = f"Execution has no field '{name}'"
            raise AttributeError(msg)
        if isinstance(value, CursorState):
            value = value.to_dict()
        elif name == "trigger_data":
            value = json_safe(value)
        values[name] = value
    return values


class SQLAlchemyExecutionStore:
    """ExecutionStore on the ``automation_executions`` tables.

    Args:
        session_maker: Factory for async sessions bound to the engine's database.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://localhost/crm")
        >>> store = SQLAlchemyExecutionStore(async_sessionmaker(engine, expire_on_commit=False))
        >>> automation = AutomationEngine(store=store, workflows=SQLAlchemyWorkflowSource(store.session_maker))
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], *, claim_batch_size: int = 100) -> None:
        self.session_maker = session_maker
        self.claim_batch_size = claim_batch_size

    async def enqueue(self, execution: Execution) -> bool:
        try:
            async with self.session_maker() as session, session.begin():
                repo = AutomationExecutionRepository(session=session)
                if execution.dedupe_key is not None:
                    existing = await repo.find_by_dedupe_key(
                        execution.workflow_id, execution.trigger_type, execution.dedupe_key
                    )
                    if existing is not None:
                        return False
                await repo.add(execution_to_model(execution))
        except (IntegrityError, RepositoryIntegrityError):
            # A concurrent insert won the unique dedupe index.
            logger.debug(
                "enqueue lost dedupe race",
                workflow_id=str(execution.workflow_id),
                dedupe_key=execution.dedupe_key,
            )
            return False
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
        if limit <= 0:
            return []
        now = now or utcnow()
        remaining = dict(workflow_limits or {})
        exhausted = {workflow_id for workflow_id, slots in remaining.items() if slots <= 0}
        seen: set[UUID] = set()
        chosen: list[UUID] = []

        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionRepository(session=session)
            while len(chosen) < limit:
                batch = max(limit, self.claim_batch_size)
                rows = await repo.lock_claimable(now, batch, exclude_workflows=exhausted, exclude_ids=seen)
                for execution_id, workflow_id, cancel_only in rows:
                    seen.add(execution_id)
                    # Cancelling a queued row takes no workflow slot.
                    if not cancel_only:
                        if workflow_id in exhausted:
                            continue
                        if workflow_id in remaining:
                            remaining[workflow_id] -= 1
                            if remaining[workflow_id] <= 0:
                                exhausted.add(workflow_id)
                    chosen.append(execution_id)
                    if len(chosen) >= limit:
                        break
                if len(rows) < batch:
                    break
            claimed = await repo.claim(chosen, owner=owner, now=now, lease_expires_at=now + lease_duration)
            return [execution_from_model(model) for model in claimed]

    async def heartbeat(
        self,
        execution_id: UUID,
        lease_duration: timedelta,
        *,
        owner: str,
        now: datetime | None = None,
    ) -> bool:
        now = now or utcnow()
        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionRepository(session=session)
            return await repo.compare_and_set(
                execution_id,
                ExecutionStatus.RUNNING,
                {"lease_expires_at": now + lease_duration, "updated_at": now},
                owner=owner,
                require_active_lease=True,
            )

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
        values = _column_values(fields)
        values.update(status=to_status, updated_at=now)
        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionRepository(session=session)
            if not await repo.compare_and_set(execution_id, from_status, values, owner=owner):
                current = await repo.get_one_or_none(id=execution_id)
                raise ClaimConflictError(
                    execution_id,
                    str(from_status),
                    str(current.status) if current is not None else None,
                )
            (model,) = await repo.find_many([execution_id])
            return execution_from_model(model)

    async def get(self, execution_id: UUID) -> Execution | None:
        async with self.session_maker() as session:
            repo = AutomationExecutionRepository(session=session)
            model = await repo.get_one_or_none(id=execution_id)
            return execution_from_model(model) if model is not None else None

    async def list_executions(
        self,
        workflow_id: UUID | None = None,
        status: ExecutionStatus | None = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Execution], int]:
        async with self.session_maker() as session:
            repo = AutomationExecutionRepository(session=session)
            models, total = await repo.find_executions(workflow_id, status, limit=limit, offset=offset)
            return [execution_from_model(model) for model in models], total

    async def count_active_by_workflow(self, now: datetime | None = None) -> dict[UUID, int]:
        async with self.session_maker() as session:
            repo = AutomationExecutionRepository(session=session)
            return await repo.count_active_by_workflow(now or utcnow())

    async def request_cancel(self, execution_id: UUID) -> Execution:
        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionRepository(session=session)
            model = await repo.get_one_or_none(id=execution_id)
            if model is None:
                raise ExecutionNotFoundError(execution_id)
            if model.status in TERMINAL_STATUSES:
                raise ExecutionAlreadyFinishedError(execution_id, str(model.status))
            await repo.compare_and_set(execution_id, model.status, {"cancel_requested": True, "updated_at": utcnow()})
            (model,) = await repo.find_many([execution_id])
            if not model.cancel_requested:
                # Finished between the read and the write.
                raise ExecutionAlreadyFinishedError(execution_id, str(model.status))
            return execution_from_model(model)

    async def request_cancel_for_workflow(self, workflow_id: UUID) -> int:
        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionRepository(session=session)
            return await repo.request_cancel_for_workflow(workflow_id, utcnow())

    async def latest_execution(self, workflow_id: UUID, trigger_type: TriggerType) -> Execution | None:
        async with self.session_maker() as session:
            repo = AutomationExecutionRepository(session=session)
            model = await repo.find_latest(workflow_id, trigger_type)
            return execution_from_model(model) if model is not None else None

    async def status_counts(self, workflow_id: UUID) -> dict[ExecutionStatus, int]:
        async with self.session_maker() as session:
            repo = AutomationExecutionRepository(session=session)
            counts = dict.fromkeys(ExecutionStatus, 0)
            counts.update(await repo.status_counts(workflow_id))
            return counts

    async def add_step(self, step: ExecutionStep) -> ExecutionStep:
        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionStepRepository(session=session)
            model = await repo.add(
                AutomationExecutionStepModel(
                    id=step.id,
                    execution_id=step.execution_id,
                    node_id=step.node_id,
                    node_type=step.node_type,
                    attempt_number=step.attempt_number,
                    started_at=step.started_at,
                    finished_at=step.finished_at,
                    outcome=step.outcome,
                    error_detail=step.error_detail,
                    output=json_safe(step.output),
                )
            )
            return step_from_model(model)

    async def finish_step(
        self,
        step_id: UUID,
        outcome: StepOutcome,
        *,
        finished_at: datetime,
        error_detail: str | None = None,
        output: Any = None,
    ) -> None:
        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionStepRepository(session=session)
            await repo.finish(
                step_id,
                {
                    "outcome": outcome,
                    "finished_at": finished_at,
                    "error_detail": error_detail,
                    "output": json_safe(output),
                    "updated_at": utcnow(),
                },
            )

    async def list_steps(self, execution_id: UUID) -> list[ExecutionStep]:
        async with self.session_maker() as session:
            repo = AutomationExecutionStepRepository(session=session)
            return [step_from_model(model) for model in await repo.find_by_execution(execution_id)]

    async def interrupt_open_steps(self, execution_id: UUID, now: datetime | None = None) -> int:
        async with self.session_maker() as session, session.begin():
            repo = AutomationExecutionStepRepository(session=session)
            return await repo.interrupt_open(execution_id, now or utcnow())


class SQLAlchemyWorkflowSource:
    """WorkflowSource on the ``automation_workflows`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def get_workflow(self, workflow_id: UUID) -> Workflow | None:
        async with self.session_maker() as session:
            repo = AutomationWorkflowRepository(session=session)
            model = await repo.get_one_or_none(id=workflow_id)
            return workflow_from_model(model) if model is not None else None

    async def list_workflows(self, *, active_only: bool = False) -> list[Workflow]:
        async with self.session_maker() as session:
            repo = AutomationWorkflowRepository(session=session)
            return [workflow_from_model(model) for model in await repo.find_all(active_only=active_only)]

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        async with self.session_maker() as session, session.begin():
            repo = AutomationWorkflowRepository(session=session)
            model = await repo.get_one_or_none(id=workflow.id)
            columns = _workflow_columns(workflow)
            if model is None:
                model = await repo.add(
                    AutomationWorkflowModel(id=workflow.id, created_at=workflow.created_at, **columns)
                )
            else:
                for name, value in columns.items():
                    setattr(model, name, value)
                model.updated_at = utcnow()
                model = await repo.update(model)
            return workflow_from_model(model)

    async def delete_workflow(self, workflow_id: UUID) -> None:
        async with self.session_maker() as session, session.begin():
            repo = AutomationWorkflowRepository(session=session)
            if await repo.get_one_or_none(id=workflow_id) is not None:
                await repo.delete(workflow_id)
