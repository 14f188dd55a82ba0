"""Graph walker and node executor.

The walker takes one CLAIMED execution and advances its cursors through the
workflow graph until every cursor has ended, failed or parked at a suspension
point (a delay node or a retry backoff). It then stores the resulting status.
No store lock is held while a node runs: the execution moves to RUNNING first
and every later write is a compare-and-swap guarded by the worker's lease.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from crm_workflows.config import EngineConfig
from crm_workflows.core.context import ActionContext, build_scope
from crm_workflows.core.definition import ActionNodeData, DelayNodeData
from crm_workflows.core.models import Cursor, ExecutionStep, json_safe, utcnow
from crm_workflows.core.types import (
    ErrorKind,
    ExecutionMode,
    ExecutionStatus,
    NodeType,
    ParallelFailureMode,
    StepOutcome,
)
from crm_workflows.engine.graph import WorkflowGraph
from crm_workflows.engine.retry import RetryManager, classify_error
from crm_workflows.exceptions import ClaimConflictError

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from crm_workflows.core.definition import Node, Workflow
    from crm_workflows.core.models import CursorState, Execution
    from crm_workflows.core.protocols import ExecutionStore
    from crm_workflows.engine.actions import ActionRegistry

__all__ = ["GraphWalker"]

logger = structlog.get_logger(__name__)


@dataclass
class _Run:
    """Mutable state of one walker pass over an execution."""

    execution: Execution
    workflow: Workflow
    graph: WorkflowGraph
    state: CursorState
    owner: str | None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    entered: set[str] = field(default_factory=set)
    cancelled: bool = False
    aborted: bool = False
    lost: bool = False

    @property
    def stopped(self) -> bool:
        return self.cancelled or self.aborted or self.lost

    @property
    def parallel(self) -> bool:
        return self.workflow.execution_mode == ExecutionMode.PARALLEL


class GraphWalker:
    """Advance an execution through its workflow graph.

    Attributes:
        store: Execution store.
        actions: Action capability registry.
        config: Engine configuration.
        retry: Retry and failure policy.
    """

    def __init__(
        self,
        store: ExecutionStore,
        actions: ActionRegistry,
        config: EngineConfig | None = None,
        retry: RetryManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.actions = actions
        self.config = config or EngineConfig()
        self.retry = retry or RetryManager(self.config)
        self.clock = clock

    async def run(self, execution: Execution, workflow: Workflow) -> Execution | None:
        """Advance a CLAIMED execution until it ends or suspends.

        Args:
            execution: The execution, as returned by the claim.
            workflow: Its workflow definition.

        Returns:
            The stored execution after the pass, or None if the worker lost
            ownership and abandoned it.
        """
        owner = execution.lease_owner
        log = logger.bind(execution_id=str(execution.id), workflow_id=str(workflow.id))
        await self.store.interrupt_open_steps(execution.id, self.clock())

        run = _Run(
            execution=execution,
            workflow=workflow,
            graph=WorkflowGraph(workflow),
            state=execution.cursor_state,
            owner=owner,
        )

        if execution.cancel_requested:
            await self._skip_cursors(run)
            return await self._finish(run, ExecutionStatus.CANCELLED, from_status=ExecutionStatus.CLAIMED)

        try:
            run.execution = await self.store.transition(
                execution.id,
                ExecutionStatus.CLAIMED,
                ExecutionStatus.RUNNING,
                owner=owner,
                now=self.clock(),
                started_at=execution.started_at or self.clock(),
                wake_at=None,
            )
        except ClaimConflictError:
            log.debug("execution owned elsewhere, abandoning")
            return None

        run.state = run.execution.cursor_state
        if not run.state.cursors and not run.state.visited and not run.state.failed:
            run.state.cursors = [Cursor(node_id=workflow.trigger_node.id)]

        heartbeat = asyncio.create_task(self._heartbeat(run))
        try:
            cursors = list(run.state.cursors)
            if run.parallel:
                await asyncio.gather(*(self._drive(run, cursor) for cursor in cursors))
            else:
                for cursor in cursors:
                    await self._drive(run, cursor)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        if run.lost:
            log.warning("lease lost, abandoning execution")
            return None
        return await self._settle(run)

    # -------------------------------------------------------------------------
    # Cursor loop
    # -------------------------------------------------------------------------

    async def _drive(self, run: _Run, cursor: Cursor) -> None:
        while not run.stopped:
            now = self.clock()
            if cursor.wake_at is not None and cursor.wake_at > now:
                return

            node = run.workflow.get_node(cursor.node_id)

            if cursor.resume:
                cursor.resume = False
                cursor.wake_at = None
                try:
                    targets = run.graph.next_nodes(node, self._scope(run), execution_id=run.execution.id)
                except Exception as e:
                    await self._fail_cursor(run, cursor, node, e)
                    return
                spawned = await self._advance(run, cursor, targets)
                if spawned:
                    await asyncio.gather(*(self._drive(run, c) for c in [cursor, *spawned]))
                    return
                if not any(c is cursor for c in run.state.cursors):
                    return
                continue

            cursor.wake_at = None
            if await self._cancel_requested(run):
                run.cancelled = True
                return

            async with run.lock:
                merged = node.id in run.state.visited or node.id in run.entered
                run.entered.add(node.id)
            if merged:
                # Another cursor already ran this node.
                async with run.lock:
                    self._remove(run, cursor)
                    run.state.completed += 1
                await self._persist(run)
                return

            targets = await self._execute(run, cursor, node)
            if targets is None:
                return
            spawned = await self._advance(run, cursor, targets)
            if spawned:
                await asyncio.gather(*(self._drive(run, c) for c in [cursor, *spawned]))
                return
            if not any(c is cursor for c in run.state.cursors):
                return

    async def _execute(self, run: _Run, cursor: Cursor, node: Node) -> list[str] | None:
        """Run one attempt of ``node``.

        Returns:
            The target node ids to move to, or None if the cursor parked or failed.
        """
        attempt = cursor.attempt + 1
        step = ExecutionStep(
            execution_id=run.execution.id,
            node_id=node.id,
            node_type=str(node.type),
            attempt_number=attempt,
            started_at=self.clock(),
        )
        await self.store.add_step(step)

        output: Any = None
        try:
            if node.type == NodeType.ACTION:
                output = await self._run_action(run, node, attempt)
            elif node.type == NodeType.DELAY:
                wake_at = self._delay_wake_at(node)
                if wake_at is not None:
                    await self.store.finish_step(
                        step.id, StepOutcome.SUCCESS, finished_at=self.clock(), output={"wake_at": wake_at.isoformat()}
                    )
                    async with run.lock:
                        cursor.attempt = 0
                        cursor.wake_at = wake_at
                        cursor.resume = True
                        run.state.visited.append(node.id)
                    await self._persist(run)
                    return None
            targets = run.graph.next_nodes(node, self._scope(run, output, node), execution_id=run.execution.id)
        except Exception as e:
            detail = str(e) or type(e).__name__
            await self.store.finish_step(step.id, StepOutcome.FAILURE, finished_at=self.clock(), error_detail=detail)
            decision = self.retry.on_failure(e, attempt, run.workflow.max_retries, self.clock())
            logger.warning(
                "node failed",
                execution_id=str(run.execution.id),
                node_id=node.id,
                attempt=attempt,
                error=detail,
                error_kind=str(decision.error_kind),
                retry=decision.retry,
                retry_at=decision.wake_at.isoformat() if decision.wake_at else None,
            )
            if decision.retry:
                async with run.lock:
                    cursor.attempt = attempt
                    cursor.wake_at = decision.wake_at
                await self._persist(run)
            else:
                await self._fail_cursor(run, cursor, node, e)
            return None

        if node.type in (NodeType.CONDITION, NodeType.BRANCH):
            output = {"selected": targets}
        await self.store.finish_step(step.id, StepOutcome.SUCCESS, finished_at=self.clock(), output=json_safe(output))
        async with run.lock:
            cursor.attempt = 0
            run.state.visited.append(node.id)
            if node.type == NodeType.ACTION:
                self._store_output(run, node, output)
        return targets

    async def _run_action(self, run: _Run, node: Node, attempt: int) -> Any:
        data = node.data
        if not isinstance(data, ActionNodeData):
            msg = f"Node '{node.id}' has no action configured"
            raise TypeError(msg)
        context = ActionContext(
            execution_id=run.execution.id,
            workflow_id=run.workflow.id,
            workflow_name=run.workflow.name,
            node_id=node.id,
            action=data.action,
            params=dict(data.params),
            trigger_data=run.execution.trigger_data,
            outputs=dict(run.state.outputs),
            attempt=attempt,
            tenant_id=run.execution.tenant_id,
        )
        return await self.actions.invoke(context, self.config.action_timeout)

    def _delay_wake_at(self, node: Node) -> datetime | None:
        data = node.data
        if not isinstance(data, DelayNodeData):
            return None
        now = self.clock()
        wake_at = data.wake_at(now)
        return wake_at if wake_at > now else None

    async def _advance(self, run: _Run, cursor: Cursor, targets: list[str]) -> list[Cursor]:
        """Move ``cursor`` to its targets; returns cursors spawned by a fan-out."""
        spawned: list[Cursor] = []
        async with run.lock:
            if not targets:
                self._remove(run, cursor)
                run.state.completed += 1
            else:
                cursor.node_id = targets[0]
                cursor.attempt = 0
                for target in targets[1:]:
                    new = Cursor(node_id=target)
                    run.state.cursors.append(new)
                    spawned.append(new)
        await self._persist(run)
        return spawned

    async def _fail_cursor(self, run: _Run, cursor: Cursor, node: Node, error: BaseException) -> None:
        async with run.lock:
            self._remove(run, cursor)
            run.state.failed.append(
                {
                    "node_id": node.id,
                    "error": str(error) or type(error).__name__,
                    "error_kind": str(classify_error(error)),
                    "attempt": cursor.attempt + 1,
                }
            )
            if not run.parallel or run.workflow.parallel_failure_mode == ParallelFailureMode.ALL_OR_NOTHING:
                run.aborted = True
        await self._persist(run)

    # -------------------------------------------------------------------------
    # Store interaction
    # -------------------------------------------------------------------------

    async def _persist(self, run: _Run) -> None:
        async with run.lock:
            if run.lost:
                return
            try:
                stored = await self.store.transition(
                    run.execution.id,
                    ExecutionStatus.RUNNING,
                    ExecutionStatus.RUNNING,
                    owner=run.owner,
                    now=self.clock(),
                    cursor_state=run.state,
                )
            except ClaimConflictError:
                run.lost = True
                return
            run.execution.updated_at = stored.updated_at

    async def _cancel_requested(self, run: _Run) -> bool:
        current = await self.store.get(run.execution.id)
        if current is None:
            run.lost = True
            return False
        if current.lease_owner != run.owner or current.status != ExecutionStatus.RUNNING:
            run.lost = True
            return False
        return current.cancel_requested

    async def _heartbeat(self, run: _Run) -> None:
        interval = self.config.heartbeat_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self.store.heartbeat(
                    run.execution.id, self.config.lease_duration, owner=run.owner or "", now=self.clock()
                )
            except Exception as e:
                logger.warning("heartbeat failed", execution_id=str(run.execution.id), error=str(e))
                continue
            if not held:
                run.lost = True
                return

    async def _skip_cursors(self, run: _Run) -> None:
        now = self.clock()
        for cursor in run.state.cursors:
            node = run.workflow.nodes_by_id.get(cursor.node_id)
            step = ExecutionStep(
                execution_id=run.execution.id,
                node_id=cursor.node_id,
                node_type=str(node.type) if node is not None else "",
                attempt_number=cursor.attempt + 1,
                started_at=now,
            )
            await self.store.add_step(step)
            await self.store.finish_step(step.id, StepOutcome.SKIPPED, finished_at=now, error_detail="cancelled")

    async def _settle(self, run: _Run) -> Execution | None:
        state = run.state
        failed = state.failed
        if run.cancelled:
            await self._skip_cursors(run)
            return await self._finish(run, ExecutionStatus.CANCELLED)
        if failed and run.aborted:
            return await self._finish(run, ExecutionStatus.FAILED)
        if state.cursors:
            return await self._suspend(run)
        if failed and state.completed == 0:
            return await self._finish(run, ExecutionStatus.FAILED)
        return await self._finish(run, ExecutionStatus.COMPLETED)

    async def _suspend(self, run: _Run) -> Execution | None:
        try:
            stored = await self.store.transition(
                run.execution.id,
                ExecutionStatus.RUNNING,
                ExecutionStatus.WAITING,
                owner=run.owner,
                now=self.clock(),
                cursor_state=run.state,
                wake_at=run.state.wake_at,
                lease_owner=None,
                lease_expires_at=None,
            )
        except ClaimConflictError:
            return None
        logger.info(
            "execution waiting",
            execution_id=str(stored.id),
            wake_at=stored.wake_at.isoformat() if stored.wake_at else None,
            nodes=run.state.node_ids,
        )
        return stored

    async def _finish(
        self,
        run: _Run,
        status: ExecutionStatus,
        *,
        from_status: ExecutionStatus = ExecutionStatus.RUNNING,
    ) -> Execution | None:
        fields: dict[str, Any] = {
            "cursor_state": run.state,
            "completed_at": self.clock(),
            "wake_at": None,
            "lease_owner": None,
            "lease_expires_at": None,
        }
        if run.state.failed:
            last = run.state.failed[-1]
            fields["error"] = last["error"]
            fields["error_kind"] = ErrorKind(last["error_kind"])
            fields["failed_node_id"] = last["node_id"]
        if status == ExecutionStatus.CANCELLED:
            fields["cursor_state"].cursors = []
        try:
            stored = await self.store.transition(
                run.execution.id, from_status, status, owner=run.owner, now=self.clock(), **fields
            )
        except ClaimConflictError:
            return None
        logger.info(
            "execution finished",
            execution_id=str(stored.id),
            workflow_id=str(stored.workflow_id),
            status=str(status),
            failed_node_id=stored.failed_node_id,
            error=stored.error,
        )
        return stored

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _remove(run: _Run, cursor: Cursor) -> None:
        run.state.cursors = [c for c in run.state.cursors if c is not cursor]

    @staticmethod
    def _store_output(run: _Run, node: Node, output: Any) -> None:
        value = json_safe(output)
        run.state.outputs.setdefault("steps", {})[node.id] = value
        data = node.data
        if isinstance(data, ActionNodeData) and data.output_key:
            run.state.outputs[data.output_key] = value

    @staticmethod
    def _scope(run: _Run, output: Any = None, node: Node | None = None) -> dict[str, Any]:
        outputs = dict(run.state.outputs)
        if node is not None and node.type == NodeType.ACTION:
            outputs["steps"] = {**outputs.get("steps", {}), node.id: json_safe(output)}
            data = node.data
            if isinstance(data, ActionNodeData) and data.output_key:
                outputs[data.output_key] = json_safe(output)
        return build_scope(run.execution.trigger_data, outputs)
