"""Repository implementations for automation persistence.

This module provides async repositories over the automation tables using
advanced-alchemy's repository pattern. The execution repository carries the
queue primitives: the locked claim scan, the claim update and the status
compare-and-swap.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from advanced_alchemy.filters import LimitOffset, OrderBy
from advanced_alchemy.repository import SQLAlchemyAsyncRepository
from sqlalchemy import and_, func, or_, select, update

from crm_workflows.core.types import (
    ACTIVE_STATUSES,
    QUEUED_STATUSES,
    TERMINAL_STATUSES,
    ExecutionStatus,
    StepOutcome,
)
from crm_workflows.db.models import (
    AutomationExecutionModel,
    AutomationExecutionStepModel,
    AutomationWorkflowModel,
)

if TYPE_CHECKING:
    from collections.abc import Collection, Sequence
    from datetime import datetime
    from uuid import UUID

    from sqlalchemy.sql.elements import ColumnElement

    from crm_workflows.core.types import TriggerType

__all__ = [
    "AutomationExecutionRepository",
    "AutomationExecutionStepRepository",
    "AutomationWorkflowRepository",
]


class AutomationWorkflowRepository(SQLAlchemyAsyncRepository[AutomationWorkflowModel]):
    """Repository for workflow definition CRUD operations."""

    model_type = AutomationWorkflowModel

    async def find_all(self, *, active_only: bool = False) -> Sequence[AutomationWorkflowModel]:
        """List workflows ordered by name.

        Args:
            active_only: Only return active, unpaused workflows.

        Returns:
            List of workflow rows.
        """
        stmt = select(AutomationWorkflowModel).order_by(AutomationWorkflowModel.name, AutomationWorkflowModel.id)
        if active_only:
            stmt = stmt.where(
                and_(
                    AutomationWorkflowModel.is_active == True,  # noqa: E712
                    AutomationWorkflowModel.is_paused == False,  # noqa: E712
                )
            )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class AutomationExecutionRepository(SQLAlchemyAsyncRepository[AutomationExecutionModel]):
    """Repository for executions and the queue operations on them."""

    model_type = AutomationExecutionModel

    @staticmethod
    def claimable(now: datetime) -> ColumnElement[bool]:
        """Filter matching rows a claim at ``now`` may take."""
        model = AutomationExecutionModel
        return or_(
            model.status == ExecutionStatus.PENDING,
            and_(
                model.status == ExecutionStatus.WAITING,
                or_(
                    model.cancel_requested == True,  # noqa: E712
                    model.wake_at.is_(None),
                    model.wake_at <= now,
                ),
            ),
            and_(
                model.status.in_(list(ACTIVE_STATUSES)),
                or_(model.lease_expires_at.is_(None), model.lease_expires_at <= now),
            ),
        )

    @staticmethod
    def cancel_only() -> ColumnElement[bool]:
        """Filter matching queued rows whose claim only records a cancellation."""
        model = AutomationExecutionModel
        return and_(
            model.cancel_requested == True,  # noqa: E712
            model.status.in_(list(QUEUED_STATUSES)),
        )

    async def find_by_dedupe_key(
        self,
        workflow_id: UUID,
        trigger_type: TriggerType,
        dedupe_key: str,
    ) -> AutomationExecutionModel | None:
        """Find the execution holding a dedupe key."""
        stmt = select(AutomationExecutionModel).where(
            and_(
                AutomationExecutionModel.workflow_id == workflow_id,
                AutomationExecutionModel.trigger_type == trigger_type,
                AutomationExecutionModel.dedupe_key == dedupe_key,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_claimable(
        self,
        now: datetime,
        limit: int,
        *,
        exclude_workflows: Collection[UUID] = (),
        exclude_ids: Collection[UUID] = (),
    ) -> Sequence[tuple[UUID, UUID, bool]]:
        """Lock the oldest claimable rows, skipping rows locked by other claims.

        Args:
            now: Current time.
            limit: Maximum rows to lock.
            exclude_workflows: Workflow ids with no slot left. Queued rows with a
                cancellation request are returned regardless.
            exclude_ids: Rows already examined in this claim.

        Returns:
            ``(id, workflow_id, cancel_only)`` triples ordered by ``created_at``
            then ``id``.
        """
        model = AutomationExecutionModel
        conditions: list[ColumnElement[bool]] = [self.claimable(now)]
        if exclude_workflows:
            conditions.append(or_(model.workflow_id.not_in(list(exclude_workflows)), self.cancel_only()))
        if exclude_ids:
            conditions.append(model.id.not_in(list(exclude_ids)))
        stmt = (
            select(model.id, model.workflow_id, self.cancel_only().label("cancel_only"))
            .where(and_(*conditions))
            .order_by(model.created_at, model.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self.session.execute(stmt)
        return [(row.id, row.workflow_id, bool(row.cancel_only)) for row in result.all()]

    async def claim(
        self,
        ids: Sequence[UUID],
        *,
        owner: str,
        now: datetime,
        lease_expires_at: datetime,
    ) -> Sequence[AutomationExecutionModel]:
        """Move locked rows to CLAIMED, re-checking claimability.

        Returns:
            The rows actually claimed, oldest first.
        """
        if not ids:
            return []
        model = AutomationExecutionModel
        stmt = (
            update(model)
            .where(and_(model.id.in_(list(ids)), self.claimable(now)))
            .values(
                status=ExecutionStatus.CLAIMED,
                claimed_at=now,
                lease_owner=owner,
                lease_expires_at=lease_expires_at,
                updated_at=now,
            )
            .returning(model.id)
            .execution_options(synchronize_session=False)
        )
        claimed = [row[0] for row in (await self.session.execute(stmt)).all()]
        if not claimed:
            return []
        return await self.find_many(claimed)

    async def find_many(self, ids: Sequence[UUID]) -> Sequence[AutomationExecutionModel]:
        """Load rows by id, oldest first, bypassing stale session state."""
        stmt = (
            select(AutomationExecutionModel)
            .where(AutomationExecutionModel.id.in_(list(ids)))
            .order_by(AutomationExecutionModel.created_at, AutomationExecutionModel.id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def compare_and_set(
        self,
        execution_id: UUID,
        expected: ExecutionStatus,
        values: dict[str, Any],
        *,
        owner: str | None = None,
        require_active_lease: bool = False,
    ) -> bool:
        """Update a row only if its status (and lease owner) still match.

        Args:
            execution_id: Row to update.
            expected: Status the row must have.
            values: Column values to write.
            owner: When given, the lease owner the row must have.
            require_active_lease: Only match CLAIMED/RUNNING rows; used by heartbeats.

        Returns:
            True if the row was updated.
        """
        model = AutomationExecutionModel
        conditions: list[ColumnElement[bool]] = [model.id == execution_id]
        if require_active_lease:
            conditions.append(model.status.in_(list(ACTIVE_STATUSES)))
        else:
            conditions.append(model.status == expected)
        if owner is not None:
            conditions.append(model.lease_owner == owner)
        stmt = (
            update(model)
            .where(and_(*conditions))
            .values(**values)
            .returning(model.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def find_executions(
        self,
        workflow_id: UUID | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[AutomationExecutionModel], int]:
        """Find executions newest first with optional filters.

        Returns:
            Tuple of (executions, total_count).
        """
        conditions: list[Any] = []
        if workflow_id is not None:
            conditions.append(AutomationExecutionModel.workflow_id == workflow_id)
        if status is not None:
            conditions.append(AutomationExecutionModel.status == status)

        return await self.list_and_count(
            *conditions,
            LimitOffset(limit=limit, offset=offset),
            OrderBy(field_name="created_at", sort_order="desc"),
            OrderBy(field_name="id", sort_order="desc"),
        )

    async def count_active_by_workflow(self, now: datetime) -> dict[UUID, int]:
        """Count rows holding an unexpired lease, per workflow."""
        model = AutomationExecutionModel
        stmt = (
            select(model.workflow_id, func.count())
            .where(and_(model.status.in_(list(ACTIVE_STATUSES)), model.lease_expires_at > now))
            .group_by(model.workflow_id)
        )
        result = await self.session.execute(stmt)
        return {workflow_id: count for workflow_id, count in result.all()}

    async def find_latest(self, workflow_id: UUID, trigger_type: TriggerType) -> AutomationExecutionModel | None:
        """Most recently created execution of a workflow for a trigger type."""
        model = AutomationExecutionModel
        stmt = (
            select(model)
            .where(and_(model.workflow_id == workflow_id, model.trigger_type == trigger_type))
            .order_by(model.created_at.desc(), model.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def status_counts(self, workflow_id: UUID) -> dict[ExecutionStatus, int]:
        """Number of executions of a workflow per status."""
        model = AutomationExecutionModel
        stmt = select(model.status, func.count()).where(model.workflow_id == workflow_id).group_by(model.status)
        result = await self.session.execute(stmt)
        return {ExecutionStatus(status): count for status, count in result.all()}

    async def request_cancel_for_workflow(self, workflow_id: UUID, now: datetime) -> int:
        """Flag every unfinished execution of a workflow for cancellation."""
        model = AutomationExecutionModel
        stmt = (
            update(model)
            .where(
                and_(
                    model.workflow_id == workflow_id,
                    model.status.not_in(list(TERMINAL_STATUSES)),
                    model.cancel_requested == False,  # noqa: E712
                )
            )
            .values(cancel_requested=True, updated_at=now)
            .returning(model.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return len(result.all())


class AutomationExecutionStepRepository(SQLAlchemyAsyncRepository[AutomationExecutionStepModel]):
    """Repository for execution audit steps."""

    model_type = AutomationExecutionStepModel

    async def find_by_execution(self, execution_id: UUID) -> Sequence[AutomationExecutionStepModel]:
        """Find all steps of an execution.

        Args:
            execution_id: The execution ID.

        Returns:
            List of steps ordered by start time, then insertion time.
        """
        stmt = (
            select(AutomationExecutionStepModel)
            .where(AutomationExecutionStepModel.execution_id == execution_id)
            .order_by(
                AutomationExecutionStepModel.started_at,
                AutomationExecutionStepModel.created_at,
                AutomationExecutionStepModel.attempt_number,
            )
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def finish(self, step_id: UUID, values: dict[str, Any]) -> None:
        """Close an open step."""
        stmt = (
            update(AutomationExecutionStepModel)
            .where(AutomationExecutionStepModel.id == step_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.execute(stmt)

    async def interrupt_open(self, execution_id: UUID, now: datetime) -> int:
        """Close every open step of an execution as interrupted."""
        model = AutomationExecutionStepModel
        stmt = (
            update(model)
            .where(and_(model.execution_id == execution_id, model.outcome.is_(None)))
            .values(outcome=StepOutcome.INTERRUPTED, finished_at=now, updated_at=now)
            .returning(model.id)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return len(result.all())
