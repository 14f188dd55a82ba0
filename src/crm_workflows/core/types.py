"""Core type definitions for crm-workflows.

This module defines the fundamental enums and type aliases used throughout
the automation engine.
"""

from __future__ import annotations

import sys
from enum import Enum, auto
from typing import Any, TypeAlias

# StrEnum backport for Python < 3.11
if sys.version_info >= (3, 11):
    from enum import StrEnum
else:

    class StrEnum(str, Enum):
        """String enumeration compatibility for Python < 3.11."""

        @staticmethod
        def _generate_next_value_(name: str, start: int, count: int, last_values: list[Any]) -> str:
            return name.lower()

        def __str__(self) -> str:
            return str(self.value)


__all__ = [
    "ACTIVE_STATUSES",
    "QUEUED_STATUSES",
    "TERMINAL_STATUSES",
    "DelayUnit",
    "ErrorKind",
    "EventKind",
    "ExecutionMode",
    "ExecutionStatus",
    "NodeType",
    "ParallelFailureMode",
    "Scope",
    "StepOutcome",
    "TriggerType",
]


class TriggerType(StrEnum):
    """What kind of CRM occurrence starts a workflow.

    Attributes:
        ENTITY_CREATED: A CRM entity (lead, contact, opportunity...) was created.
        ENTITY_UPDATED: A CRM entity was updated.
        TAG_APPLIED: A tag was applied to an entity.
        TIME_ELAPSED: A configured interval or cron schedule came due.
        FORM_SUBMITTED: A form was submitted.
        MANUAL: Started explicitly through the manual execution API.
    """

    ENTITY_CREATED = auto()
    ENTITY_UPDATED = auto()
    TAG_APPLIED = auto()
    TIME_ELAPSED = auto()
    FORM_SUBMITTED = auto()
    MANUAL = auto()


class EventKind(StrEnum):
    """Kind of domain event delivered by the CRM layer."""

    CREATED = auto()
    UPDATED = auto()
    DELETED = auto()
    TAG_APPLIED = auto()
    FORM_SUBMITTED = auto()


class NodeType(StrEnum):
    """Classification of nodes within a workflow graph.

    Attributes:
        TRIGGER: The single entry point of the graph.
        CONDITION: Chooses one outgoing edge by evaluating conditions.
        ACTION: Invokes an external capability (email, task, webhook...).
        DELAY: Suspends the cursor until a wake time.
        BRANCH: Chooses one outgoing edge by condition or weighted split.
        END: Terminates the cursor.
    """

    TRIGGER = auto()
    CONDITION = auto()
    ACTION = auto()
    DELAY = auto()
    BRANCH = auto()
    END = auto()


class ExecutionMode(StrEnum):
    """How many frontier cursors may advance at once within one execution."""

    SEQUENTIAL = auto()
    PARALLEL = auto()


class ParallelFailureMode(StrEnum):
    """What a failing frontier cursor does to its siblings in parallel mode.

    Attributes:
        INDEPENDENT: Siblings keep running; the execution fails only if every cursor failed.
        ALL_OR_NOTHING: The first failure stops sibling cursors and fails the execution.
    """

    INDEPENDENT = auto()
    ALL_OR_NOTHING = auto()


class ExecutionStatus(StrEnum):
    """Lifecycle status of an execution.

    Attributes:
        PENDING: Created by a trigger and waiting to be claimed.
        CLAIMED: Leased by a scheduler worker, not yet started.
        RUNNING: A worker is advancing its cursors.
        WAITING: Suspended at a delay node or a retry backoff.
        COMPLETED: Every cursor reached a terminal node.
        FAILED: Terminated by an unrecoverable error.
        CANCELLED: Terminated by a cancellation request.
    """

    PENDING = auto()
    CLAIMED = auto()
    RUNNING = auto()
    WAITING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible from this status."""
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})
"""Statuses an execution never leaves."""

ACTIVE_STATUSES = frozenset({ExecutionStatus.CLAIMED, ExecutionStatus.RUNNING})
"""Statuses that hold a worker slot and count against concurrency caps."""

QUEUED_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.WAITING})
"""Statuses of executions waiting for a claim."""


class StepOutcome(StrEnum):
    """Outcome recorded on an execution step.

    Attributes:
        SUCCESS: The node completed.
        FAILURE: The node attempt failed.
        SKIPPED: The node was not run (cancellation or merge).
        INTERRUPTED: The worker lost its lease while the attempt was open.
    """

    SUCCESS = auto()
    FAILURE = auto()
    SKIPPED = auto()
    INTERRUPTED = auto()


class ErrorKind(StrEnum):
    """Classification of the error that failed an execution."""

    CONFIGURATION = auto()
    TRANSIENT = auto()
    INTERNAL = auto()


class DelayUnit(StrEnum):
    """Units accepted by relative delay nodes."""

    SECONDS = auto()
    MINUTES = auto()
    HOURS = auto()
    DAYS = auto()
    WEEKS = auto()


# Type aliases
Scope: TypeAlias = dict[str, Any]
"""Variables visible to condition expressions during an execution."""
