"""Exception handling for automation web endpoints.

This module maps engine exceptions to HTTP responses for the automation REST
API.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from litestar import Response
from litestar.status_codes import (
    HTTP_400_BAD_REQUEST,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from crm_workflows.exceptions import (
    ConfigurationError,
    EventDeliveryError,
    ExecutionAlreadyFinishedError,
    ExecutionNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)

if TYPE_CHECKING:  # pragma: no cover
    from litestar import Request

__all__ = [
    "configuration_error_handler",
    "event_delivery_handler",
    "exception_handlers",
    "finished_handler",
    "not_found_handler",
]


def _error_response(error: str, exc: Exception, status_code: int, **extra: Any) -> Response[dict[str, Any]]:
    return Response(
        content={"error": error, "message": str(exc), **extra},
        status_code=status_code,
        media_type="application/json",
    )


def not_found_handler(
    _request: Request,
    exc: WorkflowNotFoundError | ExecutionNotFoundError,
) -> Response[dict[str, Any]]:
    """Return a 404 response for a missing workflow or execution."""
    return _error_response("not_found", exc, HTTP_404_NOT_FOUND)


def finished_handler(_request: Request, exc: ExecutionAlreadyFinishedError) -> Response[dict[str, Any]]:
    """Return a 409 response when cancelling an execution that already finished."""
    return _error_response("already_finished", exc, HTTP_409_CONFLICT, status=exc.status)


def configuration_error_handler(_request: Request, exc: ConfigurationError) -> Response[dict[str, Any]]:
    """Return a 400 response for an invalid workflow definition.

    Validation errors list every problem found under ``errors``.
    """
    errors = exc.errors if isinstance(exc, WorkflowValidationError) else [str(exc)]
    return _error_response("invalid_workflow", exc, HTTP_400_BAD_REQUEST, errors=errors)


def event_delivery_handler(_request: Request, exc: EventDeliveryError) -> Response[dict[str, Any]]:
    """Return a 503 response so the CRM layer redelivers the event later.

    Redelivery is safe: executions already created are deduplicated.
    """
    return _error_response(
        "event_not_delivered",
        exc,
        HTTP_503_SERVICE_UNAVAILABLE,
        workflows=[str(workflow_id) for workflow_id in exc.failures],
    )


exception_handlers: dict[type[Exception], Any] = {
    WorkflowNotFoundError: not_found_handler,
    ExecutionNotFoundError: not_found_handler,
    ExecutionAlreadyFinishedError: finished_handler,
    ConfigurationError: configuration_error_handler,
    EventDeliveryError: event_delivery_handler,
}
