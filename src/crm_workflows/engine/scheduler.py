"""Polling scheduler.

The scheduler is the concurrency-control loop of the engine. Every tick it
fires due time triggers, works out how many executions may start under the
global cap, the local worker pool and each workflow's own cap, claims that
many from the store and hands each to a worker task running the graph walker.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog

from crm_workflows.config import EngineConfig
from crm_workflows.core.models import utcnow
from crm_workflows.core.types import ErrorKind, ExecutionStatus
from crm_workflows.engine.retry import compute_backoff
from crm_workflows.exceptions import ClaimConflictError, EventDeliveryError

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime, timedelta
    from uuid import UUID

    from crm_workflows.core.definition import Workflow
    from crm_workflows.core.models import Execution
    from crm_workflows.core.protocols import ExecutionStore, WorkflowSource
    from crm_workflows.engine.triggers import TriggerEvaluator
    from crm_workflows.engine.walker import GraphWalker

__all__ = ["Scheduler"]

logger = structlog.get_logger(__name__)


class Scheduler:
    """Claim executions and dispatch them to a bounded pool of worker tasks.

    A failure of one execution never escapes its worker task, and a failing
    store only pauses the loop with exponential backoff.

    Attributes:
        store: Execution store.
        workflows: Source of workflow definitions.
        walker: Graph walker run by each worker.
        evaluator: Trigger evaluator polled for due time triggers.
        config: Engine configuration.
    """

    def __init__(
        self,
        store: ExecutionStore,
        workflows: WorkflowSource,
        walker: GraphWalker,
        evaluator: TriggerEvaluator | None = None,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.workflows = workflows
        self.walker = walker
        self.evaluator = evaluator
        self.config = config or EngineConfig()
        self.clock = clock
        self._inflight: set[asyncio.Task[None]] = set()
        self._stopping = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._consecutive_failures = 0

    @property
    def inflight(self) -> int:
        """Number of worker tasks currently running."""
        return len(self._inflight)

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def tick(self) -> list[Execution]:
        """Run one scheduling pass.

        Returns:
            The executions claimed and dispatched in this pass.

        Raises:
            Exception: Whatever the store raised; :meth:`run` turns it into backoff.
        """
        now = self.clock()

        if self.evaluator is not None:
            try:
                await self.evaluator.evaluate_due(now)
            except EventDeliveryError as e:
                logger.error("time triggers not delivered", error=str(e))

        active = await self.store.count_active_by_workflow(now)
        capacity = min(
            self.config.global_max_concurrent - sum(active.values()),
            self.config.max_workers - len(self._inflight),
        )
        if capacity <= 0:
            logger.debug("no capacity", active=sum(active.values()), inflight=len(self._inflight))
            return []

        workflows = {workflow.id: workflow for workflow in await self.workflows.list_workflows()}
        limits = self.workflow_limits(workflows, active)
        claimed = await self.store.claim_pending(
            capacity,
            self.config.lease_duration,
            owner=self.config.worker_id,
            now=now,
            workflow_limits=limits,
        )
        if claimed:
            logger.info("claimed executions", count=len(claimed), capacity=capacity)
        for execution in claimed:
            self.dispatch(execution, workflows.get(execution.workflow_id))
        return claimed

    @staticmethod
    def workflow_limits(workflows: dict[UUID, Workflow], active: dict[UUID, int]) -> dict[UUID, int]:
        """Remaining slots per workflow; paused workflows get none."""
        limits: dict[UUID, int] = {}
        for workflow_id, workflow in workflows.items():
            if workflow.is_paused:
                limits[workflow_id] = 0
            else:
                limits[workflow_id] = max(workflow.max_concurrent_executions - active.get(workflow_id, 0), 0)
        return limits

    def dispatch(self, execution: Execution, workflow: Workflow | None) -> asyncio.Task[None]:
        """Start a worker task for a claimed execution."""
        task = asyncio.create_task(self._run_one(execution, workflow), name=f"execution-{execution.id}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _run_one(self, execution: Execution, workflow: Workflow | None) -> None:
        log = logger.bind(execution_id=str(execution.id), workflow_id=str(execution.workflow_id))
        try:
            if workflow is None:
                workflow = await self.workflows.get_workflow(execution.workflow_id)
            if workflow is None:
                await self.store.transition(
                    execution.id,
                    ExecutionStatus.CLAIMED,
                    ExecutionStatus.FAILED,
                    owner=execution.lease_owner,
                    now=self.clock(),
                    error=f"Workflow '{execution.workflow_id}' not found",
                    error_kind=ErrorKind.CONFIGURATION,
                    completed_at=self.clock(),
                    lease_owner=None,
                    lease_expires_at=None,
                )
                log.error("workflow missing, execution failed")
                return
            await self.walker.run(execution, workflow)
        except ClaimConflictError:
            log.debug("execution owned elsewhere, abandoning")
        except Exception as e:
            log.exception("execution crashed")
            await self._fail_internal(execution, e)

    async def _fail_internal(self, execution: Execution, error: Exception) -> None:
        for from_status in (ExecutionStatus.RUNNING, ExecutionStatus.CLAIMED):
            try:
                await self.store.transition(
                    execution.id,
                    from_status,
                    ExecutionStatus.FAILED,
                    owner=execution.lease_owner,
                    now=self.clock(),
                    error=str(error) or type(error).__name__,
                    error_kind=ErrorKind.INTERNAL,
                    completed_at=self.clock(),
                    lease_owner=None,
                    lease_expires_at=None,
                )
            except ClaimConflictError:
                continue
            except Exception as e:
                # The lease expires and another worker reclaims the execution.
                logger.error("could not record execution failure", execution_id=str(execution.id), error=str(e))
                return
            return

    # -------------------------------------------------------------------------
    # Loop lifecycle
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Poll until :meth:`stop` is called."""
        logger.info("scheduler started", worker_id=self.config.worker_id)
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception as e:
                self._consecutive_failures += 1
                delay = self._next_delay()
                logger.error(
                    "scheduler tick failed",
                    error=str(e) or type(e).__name__,
                    consecutive_failures=self._consecutive_failures,
                    backoff=delay.total_seconds(),
                )
            else:
                self._consecutive_failures = 0
                delay = self._next_delay()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), delay.total_seconds())
        logger.info("scheduler stopped", worker_id=self.config.worker_id)

    def _next_delay(self) -> timedelta:
        if self._consecutive_failures == 0:
            return self.config.poll_interval
        return compute_backoff(self._consecutive_failures, self.config.poll_interval, self.config.store_backoff_max)

    def start(self) -> None:
        """Start the polling loop as a background task."""
        if self.is_running:
            return
        self._stopping.clear()
        self._loop_task = asyncio.create_task(self.run(), name="crm-workflows-scheduler")

    async def stop(self, *, drain: bool = True, timeout: float | None = None) -> None:
        """Stop polling, then wait for (or cancel) in-flight executions.

        Args:
            drain: Wait for in-flight executions instead of cancelling them.
                Cancelled executions keep their lease until it expires.
            timeout: Maximum time to wait for the drain.
        """
        self._stopping.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if drain:
            await self.drain(timeout)
        else:
            for task in list(self._inflight):
                task.cancel()
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for the in-flight worker tasks to finish."""
        if self._inflight:
            await asyncio.wait(set(self._inflight), timeout=timeout)
