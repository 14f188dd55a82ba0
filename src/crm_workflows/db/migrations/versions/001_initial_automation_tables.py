"""Initial automation tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create automation tables."""
    # Create automation_workflows table
    op.create_table(
        "automation_workflows",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(length=50), nullable=False),
        sa.Column("trigger_config", sa.JSON(), nullable=False),
        sa.Column("nodes", sa.JSON(), nullable=False),
        sa.Column("edges", sa.JSON(), nullable=False),
        sa.Column("execution_mode", sa.String(length=50), nullable=False),
        sa.Column("max_concurrent_executions", sa.Integer(), nullable=False, default=1),
        sa.Column("max_retries", sa.Integer(), nullable=False, default=3),
        sa.Column("parallel_failure_mode", sa.String(length=50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, default=True),
        sa.Column("is_paused", sa.Boolean(), nullable=False, default=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_automation_workflows_name", "automation_workflows", ["name"])
    op.create_index(
        "ix_automation_workflows_trigger_active",
        "automation_workflows",
        ["trigger_type", "is_active"],
    )
    op.create_index("ix_automation_workflows_tenant_id", "automation_workflows", ["tenant_id"])

    # Create automation_executions table
    op.create_table(
        "automation_executions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("trigger_type", sa.String(length=50), nullable=False),
        sa.Column("trigger_data", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=512), nullable=True),
        sa.Column("status", sa.String(length=50), nullable=False),
        sa.Column("cursor_state", sa.JSON(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("wake_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_owner", sa.String(length=255), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, default=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(length=50), nullable=True),
        sa.Column("failed_node_id", sa.String(length=255), nullable=True),
        sa.Column("tenant_id", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["workflow_id"],
            ["automation_workflows.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_executions_dedupe",
        "automation_executions",
        ["workflow_id", "trigger_type", "dedupe_key"],
        unique=True,
    )
    op.create_index(
        "ix_automation_executions_status_created",
        "automation_executions",
        ["status", "created_at"],
    )
    op.create_index(
        "ix_automation_executions_workflow_status",
        "automation_executions",
        ["workflow_id", "status"],
    )
    op.create_index("ix_automation_executions_wake_at", "automation_executions", ["wake_at"])
    op.create_index("ix_automation_executions_tenant_id", "automation_executions", ["tenant_id"])

    # Create automation_execution_steps table
    op.create_table(
        "automation_execution_steps",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("execution_id", sa.Uuid(), nullable=False),
        sa.Column("node_id", sa.String(length=255), nullable=False),
        sa.Column("node_type", sa.String(length=50), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False, default=1),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.String(length=50), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("output", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["automation_executions.id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_execution_steps_execution",
        "automation_execution_steps",
        ["execution_id", "started_at"],
    )
    op.create_index(
        "ix_automation_execution_steps_outcome",
        "automation_execution_steps",
        ["outcome"],
    )


def downgrade() -> None:
    """Drop automation tables."""
    op.drop_table("automation_execution_steps")
    op.drop_table("automation_executions")
    op.drop_table("automation_workflows")
