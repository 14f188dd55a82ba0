"""SQLAlchemy models for automation persistence.

This module defines the three tables backing the engine:
- AutomationWorkflowModel: Saved workflow definitions
- AutomationExecutionModel: The durable execution queue and its cursor state
- AutomationExecutionStepModel: Append-mostly audit trail of node visits
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from advanced_alchemy.base import UUIDAuditBase
from advanced_alchemy.types import DateTimeUTC
from sqlalchemy import JSON, Enum, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from crm_workflows.core.types import (
    ErrorKind,
    ExecutionMode,
    ExecutionStatus,
    ParallelFailureMode,
    StepOutcome,
    TriggerType,
)

__all__ = [
    "AutomationExecutionModel",
    "AutomationExecutionStepModel",
    "AutomationWorkflowModel",
    "JSONType",
]


# Cross-database JSON type: uses JSONB for PostgreSQL, JSON for others (SQLite, MySQL, etc.)
JSONType = JSON().with_variant(JSONB, "postgresql")


class AutomationWorkflowModel(UUIDAuditBase):
    """Persisted workflow definition.

    The node graph is stored as two JSON documents; the policy fields the
    scheduler filters on are real columns.

    Attributes:
        name: Human-readable name.
        description: Free-form description.
        trigger_type: Kind of occurrence that starts the workflow.
        trigger_config: Serialized trigger filter.
        nodes: Serialized nodes.
        edges: Serialized edges, in evaluation order.
        execution_mode: Sequential or parallel traversal.
        max_concurrent_executions: Cap on simultaneously active executions.
        max_retries: Per-node retry budget.
        parallel_failure_mode: Effect of a failing cursor on its siblings.
        is_active: Gates trigger evaluation.
        is_paused: Gates trigger evaluation and scheduling.
        tenant_id: Owning tenant.
    """

    __tablename__ = "automation_workflows"
    __table_args__ = (
        Index("ix_automation_workflows_trigger_active", "trigger_type", "is_active"),
        Index("ix_automation_workflows_tenant_id", "tenant_id"),
    )

    name: Mapped[str] = mapped_column(String(255), index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    trigger_type: Mapped[TriggerType] = mapped_column(
        Enum(TriggerType, native_enum=False, length=50),
        default=TriggerType.MANUAL,
    )
    trigger_config: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    nodes: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    edges: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, default=list)
    execution_mode: Mapped[ExecutionMode] = mapped_column(
        Enum(ExecutionMode, native_enum=False, length=50),
        default=ExecutionMode.SEQUENTIAL,
    )
    max_concurrent_executions: Mapped[int] = mapped_column(Integer, default=1)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    parallel_failure_mode: Mapped[ParallelFailureMode] = mapped_column(
        Enum(ParallelFailureMode, native_enum=False, length=50),
        default=ParallelFailureMode.INDEPENDENT,
    )
    is_active: Mapped[bool] = mapped_column(default=True)
    is_paused: Mapped[bool] = mapped_column(default=False)
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    executions: Mapped[list[AutomationExecutionModel]] = relationship(
        back_populates="workflow",
        lazy="noload",
    )


class AutomationExecutionModel(UUIDAuditBase):
    """One execution of a workflow, doubling as a row of the work queue.

    ``(workflow_id, trigger_type, dedupe_key)`` is unique so a redelivered
    event cannot create a second execution. Rows are never deleted by the
    engine.

    Attributes:
        workflow_id: Foreign key to the workflow.
        trigger_type: Trigger that created the execution.
        trigger_data: Immutable snapshot of the triggering event.
        dedupe_key: Idempotence key.
        status: Lifecycle status.
        cursor_state: Serialized traversal state.
        claimed_at: When the current lease was granted.
        started_at: When the walker first ran.
        completed_at: When a terminal status was reached.
        wake_at: Earliest time a WAITING row becomes claimable.
        lease_owner: Worker holding the lease.
        lease_expires_at: When the lease lapses.
        cancel_requested: Cooperative cancellation flag.
        error: Last error detail.
        error_kind: Classification of ``error``.
        failed_node_id: Node that failed the execution.
        tenant_id: Owning tenant.
    """

    __tablename__ = "automation_executions"
    __table_args__ = (
        Index(
            "ix_automation_executions_dedupe",
            "workflow_id",
            "trigger_type",
            "dedupe_key",
            unique=True,
        ),
        Index("ix_automation_executions_status_created", "status", "created_at"),
        Index("ix_automation_executions_workflow_status", "workflow_id", "status"),
        Index("ix_automation_executions_wake_at", "wake_at"),
        Index("ix_automation_executions_tenant_id", "tenant_id"),
    )

    workflow_id: Mapped[UUID] = mapped_column(
        ForeignKey("automation_workflows.id", ondelete="CASCADE"),
    )
    trigger_type: Mapped[TriggerType] = mapped_column(
        Enum(TriggerType, native_enum=False, length=50),
    )
    trigger_data: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    dedupe_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    status: Mapped[ExecutionStatus] = mapped_column(
        Enum(ExecutionStatus, native_enum=False, length=50),
        default=ExecutionStatus.PENDING,
    )
    cursor_state: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    wake_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    cancel_requested: Mapped[bool] = mapped_column(default=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[ErrorKind | None] = mapped_column(
        Enum(ErrorKind, native_enum=False, length=50),
        nullable=True,
    )
    failed_node_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    workflow: Mapped[AutomationWorkflowModel] = relationship(
        back_populates="executions",
        lazy="noload",
    )
    steps: Mapped[list[AutomationExecutionStepModel]] = relationship(
        back_populates="execution",
        lazy="noload",
        order_by="AutomationExecutionStepModel.started_at",
    )


class AutomationExecutionStepModel(UUIDAuditBase):
    """Audit record of one node-visit attempt.

    Attributes:
        execution_id: Foreign key to the execution.
        node_id: Node visited.
        node_type: Type of the node.
        attempt_number: 1-based attempt counter.
        started_at: When the attempt started.
        finished_at: When it finished; None while open.
        outcome: Result; None while open.
        error_detail: Error message of a failed attempt.
        output: Output recorded by the attempt.
    """

    __tablename__ = "automation_execution_steps"
    __table_args__ = (
        Index("ix_automation_execution_steps_execution", "execution_id", "started_at"),
        Index("ix_automation_execution_steps_outcome", "outcome"),
    )

    execution_id: Mapped[UUID] = mapped_column(
        ForeignKey("automation_executions.id", ondelete="CASCADE"),
    )
    node_id: Mapped[str] = mapped_column(String(255))
    node_type: Mapped[str] = mapped_column(String(50))
    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    started_at: Mapped[datetime] = mapped_column(DateTimeUTC(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(DateTimeUTC(timezone=True), nullable=True)
    outcome: Mapped[StepOutcome | None] = mapped_column(
        Enum(StepOutcome, native_enum=False, length=50),
        nullable=True,
    )
    error_detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    output: Mapped[Any | None] = mapped_column(JSONType, nullable=True)

    execution: Mapped[AutomationExecutionModel] = relationship(
        back_populates="steps",
    )
