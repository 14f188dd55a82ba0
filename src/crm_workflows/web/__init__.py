"""REST API for the automation engine.

The API is registered by :class:`~crm_workflows.plugin.AutomationPlugin` when
``enable_api=True`` (the default) under ``/automations``:

- ``POST /events``: deliver a CRM event
- ``GET|POST /workflows``, ``GET /workflows/{id}``: definitions
- ``POST /workflows/{id}/execute``: manual run
- ``GET /workflows/{id}/stats``: execution counts by status
- ``POST /workflows/{id}/cancel-executions``: bulk cancellation
- ``GET /executions``, ``GET /executions/{id}``: inspection with audit trail
- ``POST /executions/{id}/cancel``: cooperative cancellation

Example:
    With authentication guards::

        from crm_workflows import AutomationPlugin, AutomationPluginConfig

        config = AutomationPluginConfig(
            api_path_prefix="/api/v1/automations",
            api_guards=[require_auth_guard],
        )

        app = Litestar(plugins=[AutomationPlugin(config=config)])
"""

from __future__ import annotations

from crm_workflows.web.controllers import EventController, ExecutionController, WorkflowController
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
from crm_workflows.web.exceptions import exception_handlers

__all__ = [
    "CRMEventDTO",
    "CancelledExecutionsDTO",
    "EventController",
    "ExecuteWorkflowDTO",
    "ExecutionController",
    "ExecutionDTO",
    "ExecutionDetailDTO",
    "ExecutionPageDTO",
    "ExecutionStepDTO",
    "WorkflowController",
    "WorkflowSummaryDTO",
    "exception_handlers",
]
