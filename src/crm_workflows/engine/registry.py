"""Workflow registry for managing workflow definitions in memory.

This module provides a registry implementing the WorkflowSource protocol for
single-process deployments and tests. Database-backed deployments use
:class:`crm_workflows.db.store.SQLAlchemyWorkflowSource` instead.
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING

from crm_workflows.core.models import utcnow

if TYPE_CHECKING:
    from uuid import UUID

    from crm_workflows.core.definition import Workflow

__all__ = ["WorkflowRegistry"]


class WorkflowRegistry:
    """Registry for storing and retrieving workflow definitions.

    Workflows are copied on the way in and out, so callers editing a workflow
    object never change what the engine sees until they save it again.

    Attributes:
        _definitions: Map of workflow id to definition.
    """

    def __init__(self, workflows: list[Workflow] | None = None) -> None:
        """Initialize the registry.

        Args:
            workflows: Definitions to register up front.
        """
        self._definitions: dict[UUID, Workflow] = {}
        for workflow in workflows or []:
            self.register(workflow)

    def register(self, workflow: Workflow) -> None:
        """Register or replace a workflow definition.

        Example:
            >>> registry = WorkflowRegistry()
            >>> registry.register(lead_followup)
        """
        self._definitions[workflow.id] = copy.deepcopy(workflow)

    def unregister(self, workflow_id: UUID) -> None:
        """Remove a workflow from the registry.

        Raises:
            KeyError: If the workflow is not registered.
        """
        if workflow_id not in self._definitions:
            msg = f"Workflow '{workflow_id}' not found in registry"
            raise KeyError(msg)
        del self._definitions[workflow_id]

    def has_workflow(self, workflow_id: UUID) -> bool:
        return workflow_id in self._definitions

    async def get_workflow(self, workflow_id: UUID) -> Workflow | None:
        workflow = self._definitions.get(workflow_id)
        return copy.deepcopy(workflow) if workflow is not None else None

    async def list_workflows(self, *, active_only: bool = False) -> list[Workflow]:
        return [
            copy.deepcopy(workflow)
            for workflow in self._definitions.values()
            if not active_only or workflow.accepts_triggers
        ]

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        workflow.updated_at = utcnow()
        self.register(workflow)
        return copy.deepcopy(workflow)

    async def delete_workflow(self, workflow_id: UUID) -> None:
        self._definitions.pop(workflow_id, None)
