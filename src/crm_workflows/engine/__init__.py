"""Automation engine components.

This module provides the graph navigation, trigger evaluation, scheduling,
node execution and retry components, and the facade wiring them together.
"""

from __future__ import annotations

from crm_workflows.engine.actions import ActionRegistry
from crm_workflows.engine.graph import WorkflowGraph
from crm_workflows.engine.local import AutomationEngine
from crm_workflows.engine.registry import WorkflowRegistry
from crm_workflows.engine.retry import RetryManager, RetryPolicy, compute_backoff
from crm_workflows.engine.scheduler import Scheduler
from crm_workflows.engine.triggers import TriggerEvaluator
from crm_workflows.engine.walker import GraphWalker

__all__ = [
    "ActionRegistry",
    "AutomationEngine",
    "GraphWalker",
    "RetryManager",
    "RetryPolicy",
    "Scheduler",
    "TriggerEvaluator",
    "WorkflowGraph",
    "WorkflowRegistry",
    "compute_backoff",
]
