"""Core domain module for crm-workflows.

This module exports the fundamental building blocks: types, conditions,
workflow definitions, runtime records, the action context and protocols.
"""

from __future__ import annotations

from crm_workflows.core.conditions import Comparison, Condition, ConditionGroup, parse_condition, resolve_path
from crm_workflows.core.context import ActionContext, build_scope
from crm_workflows.core.definition import (
    ActionNodeData,
    BranchNodeData,
    ConditionNodeData,
    DelayNodeData,
    Edge,
    EndNodeData,
    FieldPredicate,
    Node,
    TriggerConfig,
    TriggerNodeData,
    Workflow,
)
from crm_workflows.core.models import CRMEvent, Cursor, CursorState, Execution, ExecutionStep
from crm_workflows.core.protocols import ActionHandler, ExecutionStore, WorkflowSource
from crm_workflows.core.types import (
    DelayUnit,
    ErrorKind,
    EventKind,
    ExecutionMode,
    ExecutionStatus,
    NodeType,
    ParallelFailureMode,
    StepOutcome,
    TriggerType,
)

__all__ = [
    "ActionContext",
    "ActionHandler",
    "ActionNodeData",
    "BranchNodeData",
    "CRMEvent",
    "Comparison",
    "Condition",
    "ConditionGroup",
    "ConditionNodeData",
    "Cursor",
    "CursorState",
    "DelayNodeData",
    "DelayUnit",
    "Edge",
    "EndNodeData",
    "ErrorKind",
    "EventKind",
    "Execution",
    "ExecutionMode",
    "ExecutionStatus",
    "ExecutionStep",
    "ExecutionStore",
    "FieldPredicate",
    "Node",
    "NodeType",
    "ParallelFailureMode",
    "StepOutcome",
    "TriggerConfig",
    "TriggerNodeData",
    "TriggerType",
    "Workflow",
    "WorkflowSource",
    "build_scope",
    "parse_condition",
    "resolve_path",
]
