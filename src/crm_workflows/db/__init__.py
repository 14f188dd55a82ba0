"""Database persistence layer for crm-workflows.

This module provides SQLAlchemy models, repositories and the durable
execution store and workflow source built on them.

Requires the [db] extra:
    pip install crm-workflows[db]
"""

from __future__ import annotations

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
from crm_workflows.db.store import SQLAlchemyExecutionStore, SQLAlchemyWorkflowSource

__all__ = [
    "AutomationExecutionModel",
    "AutomationExecutionRepository",
    "AutomationExecutionStepModel",
    "AutomationExecutionStepRepository",
    "AutomationWorkflowModel",
    "AutomationWorkflowRepository",
    "SQLAlchemyExecutionStore",
    "SQLAlchemyWorkflowSource",
]
