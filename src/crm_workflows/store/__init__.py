"""Execution store implementations that need no database."""

from __future__ import annotations

from crm_workflows.store.memory import InMemoryExecutionStore

__all__ = ["InMemoryExecutionStore"]
