"""Trigger evaluation.

The evaluator turns CRM domain events into PENDING executions for every active
workflow whose trigger matches, turns due ``time_elapsed`` schedules into
executions when the scheduler polls it, and creates manual runs. It never runs
any node logic itself.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from croniter import croniter

from crm_workflows.config import EngineConfig
from crm_workflows.core.conditions import resolve_path
from crm_workflows.core.models import CRMEvent, Execution, json_safe, utcnow
from crm_workflows.core.types import EventKind, TriggerType
from crm_workflows.engine.retry import compute_backoff
from crm_workflows.exceptions import EventDeliveryError, WorkflowNotFoundError

if TYPE_CHECKING:
    from collections.abc import Callable
    from uuid import UUID

    from crm_workflows.core.definition import Workflow
    from crm_workflows.core.protocols import ExecutionStore, WorkflowSource

__all__ = ["EVENT_TRIGGERS", "TriggerEvaluator"]

logger = structlog.get_logger(__name__)

EVENT_TRIGGERS: dict[EventKind, TriggerType] = {
    EventKind.CREATED: TriggerType.ENTITY_CREATED,
    EventKind.UPDATED: TriggerType.ENTITY_UPDATED,
    EventKind.TAG_APPLIED: TriggerType.TAG_APPLIED,
    EventKind.FORM_SUBMITTED: TriggerType.FORM_SUBMITTED,
}
"""Trigger type fired by each event kind. Deletions fire nothing."""


class TriggerEvaluator:
    """Match events against workflow triggers and enqueue executions.

    Enqueueing is retried at this boundary with exponential backoff. An event
    that still cannot be persisted is logged, counted in ``failed_events`` and
    reported with :class:`EventDeliveryError`; it is never dropped silently.

    Attributes:
        store: Execution store receiving new executions.
        workflows: Source of workflow definitions.
        config: Engine configuration.
        failed_events: Number of (event, workflow) deliveries given up on.
    """

    def __init__(
        self,
        store: ExecutionStore,
        workflows: WorkflowSource,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.workflows = workflows
        self.config = config or EngineConfig()
        self.clock = clock
        self.failed_events = 0

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    @staticmethod
    def matches(workflow: Workflow, event: CRMEvent) -> bool:
        """Check whether an event fires a workflow's trigger.

        Args:
            workflow: Candidate workflow.
            event: Incoming event.

        Returns:
            True if the workflow accepts triggers, its trigger type corresponds
            to the event kind and every configured filter holds.
        """
        if not workflow.accepts_triggers:
            return False
        if EVENT_TRIGGERS.get(event.event_kind) != workflow.trigger_type:
            return False
        config = workflow.trigger_config
        if config.entity_type is not None and config.entity_type != event.entity_type:
            return False
        if workflow.trigger_type == TriggerType.TAG_APPLIED and config.tag is not None and config.tag != event.tag:
            return False
        if (
            workflow.trigger_type == TriggerType.FORM_SUBMITTED
            and config.form_id is not None
            and str(config.form_id) != str(event.form_id)
        ):
            return False
        return all(
            predicate.matches(event.entity_snapshot, event.previous_snapshot) for predicate in config.predicates
        )

    @staticmethod
    def dedupe_key(workflow: Workflow, event: CRMEvent) -> str:
        """Build the idempotence key of an (event, workflow) pair.

        The key is ``<entity_id>:<event_kind>:<workflow_id>``. Update events
        append the event's revision, so distinct updates of one entity each
        fire while a redelivered update does not. Tag events append the tag, and
        configured ``dedupe_fields`` append their snapshot values.
        """
        parts = [str(event.entity_id), str(event.event_kind), str(workflow.id)]
        if event.event_kind == EventKind.UPDATED:
            parts.append(event.revision)
        if event.event_kind == EventKind.TAG_APPLIED and event.tag is not None:
            parts.append(event.tag)
        if event.event_kind == EventKind.FORM_SUBMITTED and event.form_id is not None:
            parts.append(str(event.form_id))
        for field_path in workflow.trigger_config.dedupe_fields:
            parts.append(f"{field_path}={resolve_path(event.entity_snapshot, field_path)}")
        return ":".join(parts)

    # -------------------------------------------------------------------------
    # Inbound events
    # -------------------------------------------------------------------------

    async def notify(
        self,
        entity_type: str,
        event_kind: EventKind | str,
        entity_snapshot: dict[str, Any],
        occurred_at: datetime | None = None,
        *,
        previous_snapshot: dict[str, Any] | None = None,
        tag: str | None = None,
        form_id: str | None = None,
        tenant_id: str | None = None,
        dedupe_key: str | None = None,
    ) -> list[Execution]:
        """Evaluate a CRM event delivered by the CRUD layer.

        Args:
            entity_type: Kind of entity the event concerns.
            event_kind: What happened to it.
            entity_snapshot: Entity state after the change.
            occurred_at: Commit time of the change, if known.
            previous_snapshot: Entity state before an update.
            tag: Applied tag for tag events.
            form_id: Submitted form for form events.
            tenant_id: Owning tenant; only workflows of that tenant match.
            dedupe_key: Explicit idempotence key overriding the default.

        Returns:
            The executions created; deduplicated deliveries are omitted.

        Raises:
            EventDeliveryError: If an execution could not be persisted after retries.
        """
        event = CRMEvent(
            entity_type=entity_type,
            event_kind=EventKind(event_kind),
            entity_snapshot=entity_snapshot,
            occurred_at=occurred_at,
            previous_snapshot=previous_snapshot,
            tag=tag,
            form_id=form_id,
            tenant_id=tenant_id,
        )
        return await self.handle_event(event, dedupe_key=dedupe_key)

    async def handle_event(self, event: CRMEvent, *, dedupe_key: str | None = None) -> list[Execution]:
        """Enqueue one execution per matching workflow for ``event``.

        Raises:
            EventDeliveryError: If an execution could not be persisted after retries.
        """
        workflows = await self.workflows.list_workflows(active_only=True)
        trigger_data = event.to_trigger_data()
        created: list[Execution] = []
        failures: dict[Any, BaseException] = {}

        for workflow in workflows:
            if event.tenant_id is not None and workflow.tenant_id not in (None, event.tenant_id):
                continue
            if not self.matches(workflow, event):
                continue
            key = self.dedupe_key(workflow, event)
            if dedupe_key is not None:
                key = f"{dedupe_key}:{workflow.id}"
            execution = Execution(
                workflow_id=workflow.id,
                trigger_type=workflow.trigger_type,
                trigger_data=trigger_data,
                dedupe_key=key,
                created_at=self.clock(),
                updated_at=self.clock(),
                tenant_id=workflow.tenant_id or event.tenant_id,
            )
            try:
                inserted = await self._enqueue(execution)
            except Exception as e:
                failures[workflow.id] = e
                self._record_failure(execution, e, entity_type=event.entity_type, event_kind=str(event.event_kind))
                continue
            if inserted:
                created.append(execution)

        if failures:
            raise EventDeliveryError(str(event.event_kind), event.entity_type, failures)
        return created

    async def execute_now(
        self,
        workflow_id: UUID,
        trigger_data: dict[str, Any] | None = None,
        *,
        tenant_id: str | None = None,
    ) -> Execution:
        """Create a manual execution, bypassing trigger matching and dedupe.

        Raises:
            WorkflowNotFoundError: If the workflow does not exist.
            EventDeliveryError: If the execution could not be persisted after retries.
        """
        workflow = await self.workflows.get_workflow(workflow_id)
        if workflow is None:
            raise WorkflowNotFoundError(workflow_id)
        execution = Execution(
            workflow_id=workflow.id,
            trigger_type=TriggerType.MANUAL,
            trigger_data=json_safe(trigger_data or {}),
            created_at=self.clock(),
            updated_at=self.clock(),
            tenant_id=tenant_id or workflow.tenant_id,
        )
        try:
            await self._enqueue(execution)
        except Exception as e:
            self._record_failure(execution, e, entity_type="manual", event_kind=str(TriggerType.MANUAL))
            raise EventDeliveryError(str(TriggerType.MANUAL), "manual", {workflow.id: e}) from e
        return execution

    # -------------------------------------------------------------------------
    # Time triggers
    # -------------------------------------------------------------------------

    async def evaluate_due(self, now: datetime | None = None) -> list[Execution]:
        """Create executions for ``time_elapsed`` workflows whose slot came due.

        Each slot gets a dedupe key, so replicas polling concurrently (or a
        repeated poll) create one execution per slot. Missed slots are not
        replayed: only the latest slot at or before ``now`` fires.

        Raises:
            EventDeliveryError: If an execution could not be persisted after retries.
        """
        now = now or self.clock()
        created: list[Execution] = []
        failures: dict[Any, BaseException] = {}

        for workflow in await self.workflows.list_workflows(active_only=True):
            if workflow.trigger_type != TriggerType.TIME_ELAPSED:
                continue
            latest = await self.store.latest_execution(workflow.id, TriggerType.TIME_ELAPSED)
            slot = self.due_slot(workflow, latest, now)
            if slot is None:
                continue
            execution = Execution(
                workflow_id=workflow.id,
                trigger_type=TriggerType.TIME_ELAPSED,
                trigger_data={"scheduled_for": slot.isoformat(), "workflow_id": str(workflow.id)},
                dedupe_key=f"time_elapsed:{workflow.id}:{slot.isoformat()}",
                created_at=now,
                updated_at=now,
                tenant_id=workflow.tenant_id,
            )
            try:
                if await self._enqueue(execution):
                    created.append(execution)
            except Exception as e:
                failures[workflow.id] = e
                self._record_failure(execution, e, entity_type="schedule", event_kind=str(TriggerType.TIME_ELAPSED))

        if failures:
            raise EventDeliveryError(str(TriggerType.TIME_ELAPSED), "schedule", failures)
        return created

    @staticmethod
    def due_slot(workflow: Workflow, latest: Execution | None, now: datetime) -> datetime | None:
        """Latest schedule slot at or before ``now`` that has not fired yet.

        Args:
            workflow: A ``time_elapsed`` workflow.
            latest: Its most recent scheduled execution, if any.
            now: Current time.

        Returns:
            The slot to fire, or None if nothing is due.
        """
        anchor = workflow.created_at
        if latest is not None and latest.trigger_data.get("scheduled_for"):
            anchor = datetime.fromisoformat(latest.trigger_data["scheduled_for"])

        config = workflow.trigger_config
        if config.interval is not None:
            elapsed = now - anchor
            if elapsed < config.interval:
                return None
            return anchor + config.interval * (elapsed // config.interval)
        if config.cron is not None:
            slot = croniter(config.cron, now).get_prev(datetime)
            return slot if slot > anchor else None
        return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _enqueue(self, execution: Execution) -> bool:
        attempts = self.config.enqueue_attempts
        base = self.config.enqueue_retry_delay
        for attempt in range(1, attempts + 1):
            try:
                inserted = await self.store.enqueue(execution)
            except Exception as e:
                if attempt >= attempts:
                    raise
                delay = compute_backoff(attempt, base, base * 2 ** (attempts - 1))
                logger.warning(
                    "enqueue failed, retrying",
                    execution_id=str(execution.id),
                    workflow_id=str(execution.workflow_id),
                    attempt=attempt,
                    retry_in=delay.total_seconds(),
                    error=str(e),
                )
                await asyncio.sleep(delay.total_seconds())
                continue
            if inserted:
                logger.info(
                    "execution created",
                    execution_id=str(execution.id),
                    workflow_id=str(execution.workflow_id),
                    trigger_type=str(execution.trigger_type),
                )
            else:
                logger.info(
                    "execution deduplicated",
                    workflow_id=str(execution.workflow_id),
                    dedupe_key=execution.dedupe_key,
                )
            return inserted
        return False

    def _record_failure(self, execution: Execution, error: BaseException, **context: Any) -> None:
        self.failed_events += 1
        logger.error(
            "event delivery failed",
            workflow_id=str(execution.workflow_id),
            dedupe_key=execution.dedupe_key,
            failed_events=self.failed_events,
            error=str(error) or type(error).__name__,
            **context,
        )
