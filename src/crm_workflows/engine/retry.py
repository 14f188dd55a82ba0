"""Retry and failure policy applied around node execution.

A failed node attempt is retried on its own: the cursor stays on the node and
is parked with a backoff wake time, so the rest of the execution is never
re-run. Configuration errors are never retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from crm_workflows.core.types import ErrorKind
from crm_workflows.exceptions import ConfigurationError, TransientActionError

if TYPE_CHECKING:
    from datetime import datetime

    from crm_workflows.config import EngineConfig

__all__ = ["RetryDecision", "RetryManager", "RetryPolicy", "classify_error", "compute_backoff"]


def compute_backoff(attempt: int, base: timedelta, cap: timedelta) -> timedelta:
    """Compute exponential backoff ``base * 2^(attempt-1)``, capped.

    Args:
        attempt: 1-based number of the attempt that just failed.
        base: Delay after the first failure.
        cap: Upper bound.

    Example:
        >>> compute_backoff(3, timedelta(seconds=5), timedelta(minutes=1))
        datetime.timedelta(seconds=20)
    """
    if attempt < 1:
        return timedelta(0)
    # Bound the exponent; anything past 2**32 * base is capped anyway.
    return min(base * (2 ** min(attempt - 1, 32)), cap)


def classify_error(error: BaseException) -> ErrorKind:
    """Map an exception raised while running a node to an error kind."""
    if isinstance(error, ConfigurationError):
        return ErrorKind.CONFIGURATION
    if isinstance(error, TransientActionError):
        return ErrorKind.TRANSIENT
    return ErrorKind.INTERNAL


@dataclass(frozen=True)
class RetryPolicy:
    """Per-workflow retry budget and backoff constants.

    Attributes:
        max_retries: Retries allowed after the first attempt.
        base_delay: Backoff after the first failure.
        max_delay: Backoff cap.
    """

    max_retries: int = 3
    base_delay: timedelta = timedelta(seconds=5)
    max_delay: timedelta = timedelta(hours=1)

    def backoff(self, attempt: int) -> timedelta:
        return compute_backoff(attempt, self.base_delay, self.max_delay)


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt.

    Attributes:
        retry: Whether the node gets another attempt.
        wake_at: When the next attempt becomes due, if retrying.
        error_kind: Classification of the failure.
        error: Error detail recorded on the step and execution.
    """

    retry: bool
    wake_at: datetime | None
    error_kind: ErrorKind
    error: str


class RetryManager:
    """Decides what happens after a node attempt fails."""

    def __init__(self, config: EngineConfig) -> None:
        self.config = config

    def policy_for(self, max_retries: int) -> RetryPolicy:
        return RetryPolicy(
            max_retries=max_retries,
            base_delay=self.config.retry_base_delay,
            max_delay=self.config.retry_max_delay,
        )

    def on_failure(self, error: BaseException, attempt: int, max_retries: int, now: datetime) -> RetryDecision:
        """Decide whether to retry a failed attempt.

        Args:
            error: The exception raised by the attempt.
            attempt: 1-based number of the failed attempt.
            max_retries: Retry budget of the workflow.
            now: Current time.

        Returns:
            A decision. Transient failures retry while ``attempt <= max_retries``,
            which yields exactly ``max_retries + 1`` attempts in total.
        """
        kind = classify_error(error)
        detail = str(error) or type(error).__name__
        if kind == ErrorKind.TRANSIENT and attempt <= max_retries:
            policy = self.policy_for(max_retries)
            return RetryDecision(retry=True, wake_at=now + policy.backoff(attempt), error_kind=kind, error=detail)
        return RetryDecision(retry=False, wake_at=None, error_kind=kind, error=detail)
