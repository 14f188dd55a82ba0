"""Engine configuration.

This module provides the EngineConfig dataclass shared by the scheduler, the
graph walker, the retry manager and the trigger evaluator.
"""

from __future__ import annotations

import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from crm_workflows.exceptions import ConfigurationError

__all__ = ["EngineConfig", "default_worker_id"]


def default_worker_id() -> str:
    """Build a lease owner id unique to this process."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class EngineConfig:
    """Configuration for the automation engine.

    Attributes:
        poll_interval: Time between scheduler ticks.
        global_max_concurrent: Cap on CLAIMED/RUNNING executions across all workers.
        max_workers: Size of this process's worker pool.
        lease_duration: Length of the lease granted on claim and heartbeat.
        heartbeat_interval: How often a worker extends its lease; shorter than the lease.
        action_timeout: Time an action handler may take before the attempt counts as failed.
        retry_base_delay: First retry backoff; doubled on every further attempt.
        retry_max_delay: Cap on the retry backoff.
        store_backoff_max: Cap on the poll-loop backoff while the store is failing.
        enqueue_attempts: Attempts the trigger evaluator makes to persist an execution.
        enqueue_retry_delay: First delay between those attempts.
        worker_id: Lease owner id of this process.

    Example:
        >>> config = EngineConfig(poll_interval=timedelta(seconds=1), global_max_concurrent=50)
        >>> config.validate()
    """

    poll_interval: timedelta = timedelta(seconds=2)
    global_max_concurrent: int = 20
    max_workers: int = 10
    lease_duration: timedelta = timedelta(seconds=60)
    heartbeat_interval: timedelta = timedelta(seconds=20)
    action_timeout: timedelta = timedelta(seconds=30)
    retry_base_delay: timedelta = timedelta(seconds=5)
    retry_max_delay: timedelta = timedelta(hours=1)
    store_backoff_max: timedelta = timedelta(seconds=60)
    enqueue_attempts: int = 3
    enqueue_retry_delay: timedelta = timedelta(milliseconds=500)
    worker_id: str = field(default_factory=default_worker_id)

    def validate(self) -> None:
        """Check the configuration.

        Raises:
            ConfigurationError: If a value is out of range.
        """
        zero = timedelta(0)
        for name in ("poll_interval", "lease_duration", "heartbeat_interval", "action_timeout", "store_backoff_max"):
            if getattr(self, name) <= zero:
                msg = f"{name} must be positive"
                raise ConfigurationError(msg)
        if self.retry_base_delay < zero or self.retry_max_delay < self.retry_base_delay:
            msg = "retry delays must satisfy 0 <= retry_base_delay <= retry_max_delay"
            raise ConfigurationError(msg)
        if self.global_max_concurrent < 1 or self.max_workers < 1:
            msg = "global_max_concurrent and max_workers must be at least 1"
            raise ConfigurationError(msg)
        if self.enqueue_attempts < 1:
            msg = "enqueue_attempts must be at least 1"
            raise ConfigurationError(msg)
        if self.heartbeat_interval >= self.lease_duration:
            msg = "heartbeat_interval must be shorter than lease_duration"
            raise ConfigurationError(msg)
