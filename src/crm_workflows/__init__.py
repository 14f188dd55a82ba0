"""CRM Workflows - Workflow automation engine for CRM events.

This package runs user-defined automation workflows in response to CRM
activity: entity creation and updates, tags, form submissions, elapsed time
and manual runs. Workflows are directed graphs of trigger, condition, action,
delay, branch and end nodes executed durably by a polling scheduler.

Key Features:
    - Graph validation at save time (cycles, dangling edges, unreachable nodes)
    - Deduplicated event triggers and interval or cron time triggers
    - Leased, atomic claims that are safe across replicas
    - Sequential and parallel traversal with durable delays
    - Bounded exponential retries and a step-level audit trail
    - In-memory and SQLAlchemy stores, Litestar plugin and REST API

Example:
    >>> from crm_workflows import AutomationEngine, Workflow
    >>>
    >>> engine = AutomationEngine()
    >>>
    >>> @engine.actions.action("send_email")
    ... async def send_email(context):
    ...     return {"to": context.entity["email"]}
    >>>
    >>> await engine.save_workflow(Workflow.from_dict(definition))
    >>> await engine.notify("lead", "created", {"id": "lead-1", "email": "a@example.com"})
    >>> await engine.run_until_idle()
"""

from __future__ import annotations

from crm_workflows.__metadata__ import __project__, __version__
from crm_workflows.config import EngineConfig
from crm_workflows.core.context import ActionContext
from crm_workflows.core.definition import Edge, Node, TriggerConfig, Workflow
from crm_workflows.core.models import CRMEvent, Execution, ExecutionStep
from crm_workflows.core.types import (
    EventKind,
    ExecutionMode,
    ExecutionStatus,
    NodeType,
    StepOutcome,
    TriggerType,
)
from crm_workflows.engine.actions import ActionRegistry
from crm_workflows.engine.local import AutomationEngine
from crm_workflows.exceptions import (
    ClaimConflictError,
    ConditionError,
    ConfigurationError,
    EventDeliveryError,
    ExecutionAlreadyFinishedError,
    ExecutionNotFoundError,
    TransientActionError,
    UnknownActionError,
    WorkflowNotFoundError,
    WorkflowsError,
    WorkflowValidationError,
)
from crm_workflows.log import configure_logging
from crm_workflows.plugin import AutomationPlugin, AutomationPluginConfig

__all__ = (
    "ActionContext",
    "ActionRegistry",
    "AutomationEngine",
    "AutomationPlugin",
    "AutomationPluginConfig",
    "CRMEvent",
    "ClaimConflictError",
    "ConditionError",
    "ConfigurationError",
    "Edge",
    "EngineConfig",
    "EventDeliveryError",
    "EventKind",
    "Execution",
    "ExecutionAlreadyFinishedError",
    "ExecutionMode",
    "ExecutionNotFoundError",
    "ExecutionStatus",
    "ExecutionStep",
    "Node",
    "NodeType",
    "StepOutcome",
    "TransientActionError",
    "TriggerConfig",
    "TriggerType",
    "UnknownActionError",
    "Workflow",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
    "WorkflowsError",
    "__project__",
    "__version__",
    "configure_logging",
)
