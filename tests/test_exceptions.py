"""Tests for the exception hierarchy."""

from __future__ import annotations

from uuid import uuid4

import pytest

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


@pytest.mark.unit
class TestHierarchy:
    """Tests for exception inheritance."""

    @pytest.mark.parametrize(
        "exc_type",
        [
            ConfigurationError,
            WorkflowValidationError,
            ConditionError,
            UnknownActionError,
            TransientActionError,
            ClaimConflictError,
            WorkflowNotFoundError,
            ExecutionNotFoundError,
            ExecutionAlreadyFinishedError,
            EventDeliveryError,
        ],
    )
    def test_base_class(self, exc_type: type[Exception]) -> None:
        assert issubclass(exc_type, WorkflowsError)

    def test_configuration_errors(self) -> None:
        for exc_type in (WorkflowValidationError, ConditionError, UnknownActionError):
            assert issubclass(exc_type, ConfigurationError)
        assert not issubclass(TransientActionError, ConfigurationError)


@pytest.mark.unit
class TestMessages:
    """Tests for exception attributes and messages."""

    def test_validation_error(self) -> None:
        exc = WorkflowValidationError(["cycle", "orphan"])
        assert exc.errors == ["cycle", "orphan"]
        assert str(exc) == "Workflow validation failed: cycle; orphan"

    def test_transient_action_error(self) -> None:
        cause = ConnectionError("refused")
        exc = TransientActionError("send_email", cause)
        assert exc.cause is cause
        assert str(exc) == "Action 'send_email' failed: refused"
        assert str(TransientActionError("send_email", TimeoutError())) == "Action 'send_email' failed: TimeoutError"

    def test_claim_conflict(self) -> None:
        execution_id = uuid4()
        exc = ClaimConflictError(execution_id, "running", "claimed")
        assert exc.execution_id == execution_id
        assert str(exc) == f"Execution '{execution_id}' is not running (found claimed)"

    def test_already_finished(self) -> None:
        exc = ExecutionAlreadyFinishedError("abc", "completed")
        assert exc.status == "completed"
        assert str(exc) == "Execution 'abc' is already completed"

    def test_event_delivery(self) -> None:
        workflow_id = uuid4()
        exc = EventDeliveryError("created", "lead", {workflow_id: ConnectionError()})
        assert list(exc.failures) == [workflow_id]
        assert str(exc) == "Could not enqueue 'created' event for 'lead' into 1 workflow(s)"

    def test_catch_all(self) -> None:
        with pytest.raises(WorkflowsError):
            raise WorkflowNotFoundError("missing")
