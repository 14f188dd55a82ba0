"""Exception hierarchy for crm-workflows."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from uuid import UUID

__all__ = (
    "ClaimConflictError",
    "ConditionError",
    "ConfigurationError",
    "EventDeliveryError",
    "ExecutionAlreadyFinishedError",
    "ExecutionNotFoundError",
    "TransientActionError",
    "UnknownActionError",
    "WorkflowNotFoundError",
    "WorkflowValidationError",
    "WorkflowsError",
)


class WorkflowsError(Exception):
    """Base exception for all crm-workflows errors.

    All exceptions raised by crm-workflows inherit from this class, so callers
    can catch every engine error with a single except clause.
    """


class ConfigurationError(WorkflowsError):
    """Raised for fatal problems in a workflow's configuration.

    Configuration errors are never retried. They are reported at save time where
    possible, otherwise the execution that hits one fails immediately.
    """


class WorkflowValidationError(ConfigurationError):
    """Raised when workflow definition validation fails.

    This occurs when a workflow is saved with a graph or policy that violates
    the engine's constraints (cycles, dangling edges, unreachable nodes,
    unknown actions, invalid trigger configuration).

    Attributes:
        errors: List of validation error messages.
    """

    def __init__(self, errors: list[str]) -> None:
        """Initialize the exception with validation errors.

        Args:
            errors: List of validation error messages.
        """
        self.errors = errors
        super().__init__(f"Workflow validation failed: {'; '.join(errors)}")


class ConditionError(ConfigurationError):
    """Raised when a condition expression is malformed or cannot be evaluated.

    Attributes:
        expression: The offending expression, in its raw form.
        reason: What was wrong with it.
    """

    def __init__(self, expression: Any, reason: str) -> None:
        """Initialize the exception with condition details.

        Args:
            expression: The raw condition that failed.
            reason: Explanation of the failure.
        """
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid condition {expression!r}: {reason}")


class UnknownActionError(ConfigurationError):
    """Raised when an action node names an action with no registered handler.

    Attributes:
        action: The unknown action name.
    """

    def __init__(self, action: str) -> None:
        """Initialize the exception with the action name.

        Args:
            action: The unknown action name.
        """
        self.action = action
        super().__init__(f"No handler registered for action '{action}'")


class TransientActionError(WorkflowsError):
    """Raised when an action fails in a way that may succeed on retry.

    Handlers may raise this explicitly; the node executor also wraps any other
    non-configuration exception a handler raises in this class.

    Attributes:
        action: The action that failed.
        cause: The underlying exception, if any.
    """

    def __init__(self, action: str, cause: BaseException | None = None) -> None:
        """Initialize the exception with action details.

        Args:
            action: The action that failed.
            cause: The underlying exception, if any.
        """
        self.action = action
        self.cause = cause
        msg = f"Action '{action}' failed"
        if cause is not None:
            msg += f": {str(cause) or type(cause).__name__}"
        super().__init__(msg)


class ClaimConflictError(WorkflowsError):
    """Raised when a compare-and-swap transition finds an unexpected status.

    This means another worker owns the execution. Workers treat it as a signal
    to abandon the execution, never as a failure.

    Attributes:
        execution_id: The execution being transitioned.
        expected: The status the caller expected to find.
        actual: The status actually stored, if known.
    """

    def __init__(self, execution_id: UUID, expected: str, actual: str | None = None) -> None:
        """Initialize the exception with transition details.

        Args:
            execution_id: The execution being transitioned.
            expected: The status the caller expected to find.
            actual: The status actually stored, if known.
        """
        self.execution_id = execution_id
        self.expected = expected
        self.actual = actual
        msg = f"Execution '{execution_id}' is not {expected}"
        if actual is not None:
            msg += f" (found {actual})"
        super().__init__(msg)


class WorkflowNotFoundError(WorkflowsError):
    """Raised when a workflow definition is not found.

    Attributes:
        workflow_id: The ID of the workflow that was not found.
    """

    def __init__(self, workflow_id: UUID | str) -> None:
        """Initialize the exception with workflow details.

        Args:
            workflow_id: The ID of the workflow that was not found.
        """
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class ExecutionNotFoundError(WorkflowsError):
    """Raised when an execution is not found.

    Attributes:
        execution_id: The ID of the execution that was not found.
    """

    def __init__(self, execution_id: UUID | str) -> None:
        """Initialize the exception with execution details.

        Args:
            execution_id: The ID of the execution that was not found.
        """
        self.execution_id = execution_id
        super().__init__(f"Execution '{execution_id}' not found")


class ExecutionAlreadyFinishedError(WorkflowsError):
    """Raised when trying to cancel an execution that already reached a terminal state.

    Attributes:
        execution_id: The ID of the execution.
        status: The terminal status of the execution.
    """

    def __init__(self, execution_id: UUID | str, status: str) -> None:
        """Initialize the exception with execution state details.

        Args:
            execution_id: The ID of the execution.
            status: The terminal status of the execution.
        """
        self.execution_id = execution_id
        self.status = status
        super().__init__(f"Execution '{execution_id}' is already {status}")


class EventDeliveryError(WorkflowsError):
    """Raised when the trigger evaluator cannot persist executions for an event.

    The evaluator retries enqueueing at its boundary before raising this, and
    counts every event it gives up on.

    Attributes:
        event_kind: Kind of the event that could not be delivered.
        entity_type: Entity type of the event.
        failures: Mapping of workflow id to the last error seen for it.
    """

    def __init__(self, event_kind: str, entity_type: str, failures: dict[Any, BaseException]) -> None:
        """Initialize the exception with delivery details.

        Args:
            event_kind: Kind of the event that could not be delivered.
            entity_type: Entity type of the event.
            failures: Mapping of workflow id to the last error seen for it.
        """
        self.event_kind = event_kind
        self.entity_type = entity_type
        self.failures = failures
        super().__init__(
            f"Could not enqueue '{event_kind}' event for '{entity_type}' into {len(failures)} workflow(s)"
        )
