"""Runtime data models for crm-workflows.

This module provides the dataclasses for execution state: executions, their
cursor state and audit steps, and the inbound CRM event envelope.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from crm_workflows.core.types import ErrorKind, EventKind, ExecutionStatus, StepOutcome, TriggerType

__all__ = ["CRMEvent", "Cursor", "CursorState", "Execution", "ExecutionStep", "json_safe", "utcnow"]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _dt(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class Cursor:
    """One frontier position in an execution's graph traversal.

    Attributes:
        node_id: Node the cursor is about to run (or is parked on).
        wake_at: When set, the cursor is parked until this time.
        attempt: Failed attempts so far on ``node_id``.
        resume: The cursor is parked on a delay node it already ran; on wake it
            moves past the node instead of running it again.
    """

    node_id: str
    wake_at: datetime | None = None
    attempt: int = 0
    resume: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "wake_at": self.wake_at.isoformat() if self.wake_at else None,
            "attempt": self.attempt,
            "resume": self.resume,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Cursor:
        return cls(
            node_id=data["node_id"],
            wake_at=_dt(data.get("wake_at")),
            attempt=int(data.get("attempt", 0)),
            resume=bool(data.get("resume", False)),
        )


@dataclass
class CursorState:
    """Persisted traversal state of an execution.

    Attributes:
        cursors: Active cursors; a single element in sequential mode.
        visited: Node ids completed in this execution, in completion order.
        failed: One record per cursor that failed terminally.
        completed: Number of cursors that reached the end of their path.
        outputs: Action outputs; ``steps`` maps node id to output and outputs with an
            ``output_key`` are also stored at the top level under that key.
    """

    cursors: list[Cursor] = field(default_factory=list)
    visited: list[str] = field(default_factory=list)
    failed: list[dict[str, Any]] = field(default_factory=list)
    completed: int = 0
    outputs: dict[str, Any] = field(default_factory=dict)

    @property
    def node_ids(self) -> list[str]:
        """Ids of the nodes the active cursors sit on."""
        return [cursor.node_id for cursor in self.cursors]

    @property
    def wake_at(self) -> datetime | None:
        """Earliest wake time among parked cursors."""
        times = [cursor.wake_at for cursor in self.cursors if cursor.wake_at is not None]
        return min(times) if times else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cursors": [cursor.to_dict() for cursor in self.cursors],
            "visited": list(self.visited),
            "failed": [dict(record) for record in self.failed],
            "completed": self.completed,
            "outputs": dict(self.outputs),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> CursorState:
        data = data or {}
        return cls(
            cursors=[Cursor.from_dict(cursor) for cursor in data.get("cursors", [])],
            visited=list(data.get("visited", [])),
            failed=[dict(record) for record in data.get("failed", [])],
            completed=int(data.get("completed", 0)),
            outputs=dict(data.get("outputs", {})),
        )


@dataclass
class Execution:
    """One instantiation of a workflow against a triggering event.

    ``trigger_data`` is a JSON-safe snapshot taken when the execution is created
    and never changes afterwards; nodes read it rather than live entity state.

    Attributes:
        workflow_id: Workflow this execution runs.
        trigger_type: Trigger that created it.
        trigger_data: Snapshot of the triggering event.
        id: Unique identifier.
        dedupe_key: Idempotence key, unique per workflow and trigger type.
        status: Lifecycle status.
        cursor_state: Traversal state.
        lease_owner: Worker currently holding the lease.
        lease_expires_at: When the lease lapses.
        wake_at: Earliest time a WAITING execution becomes claimable.
        cancel_requested: Cooperative cancellation flag.
        error: Last error detail of a failed execution.
        error_kind: Classification of ``error``.
        failed_node_id: Node that failed the execution.
    """

    workflow_id: UUID
    trigger_type: TriggerType
    trigger_data: dict[str, Any] = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    dedupe_key: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    cursor_state: CursorState = field(default_factory=CursorState)
    created_at: datetime = field(default_factory=utcnow)
    claimed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = field(default_factory=utcnow)
    wake_at: datetime | None = None
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    cancel_requested: bool = False
    error: str | None = None
    error_kind: ErrorKind | None = None
    failed_node_id: str | None = None
    tenant_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the inspection API."""
        return {
            "id": str(self.id),
            "workflow_id": str(self.workflow_id),
            "trigger_type": str(self.trigger_type),
            "trigger_data": self.trigger_data,
            "dedupe_key": self.dedupe_key,
            "status": str(self.status),
            "cursor_state": self.cursor_state.to_dict(),
            "created_at": self.created_at.isoformat(),
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "updated_at": self.updated_at.isoformat(),
            "wake_at": self.wake_at.isoformat() if self.wake_at else None,
            "lease_owner": self.lease_owner,
            "lease_expires_at": self.lease_expires_at.isoformat() if self.lease_expires_at else None,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "error_kind": str(self.error_kind) if self.error_kind else None,
            "failed_node_id": self.failed_node_id,
            "tenant_id": self.tenant_id,
        }


@dataclass
class ExecutionStep:
    """Audit record of one node-visit attempt.

    The record is appended with ``outcome=None`` before the attempt starts and
    closed with its outcome afterwards. A step still open when a worker loses
    its lease is later closed as ``interrupted``.
    """

    execution_id: UUID
    node_id: str
    node_type: str
    attempt_number: int = 1
    id: UUID = field(default_factory=uuid4)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    outcome: StepOutcome | None = None
    error_detail: str | None = None
    output: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "execution_id": str(self.execution_id),
            "node_id": self.node_id,
            "node_type": self.node_type,
            "attempt_number": self.attempt_number,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": str(self.outcome) if self.outcome else None,
            "error_detail": self.error_detail,
            "output": self.output,
        }


@dataclass
class CRMEvent:
    """A domain event delivered by the CRM layer.

    Attributes:
        entity_type: Kind of entity (``lead``, ``contact``, ``opportunity``...).
        event_kind: What happened to it.
        entity_snapshot: Entity state after the change.
        occurred_at: When the change was committed, if the CRM reports it.
        previous_snapshot: Entity state before an update, when known.
        tag: Tag name for ``tag_applied`` events.
        form_id: Form id for ``form_submitted`` events.
        tenant_id: Owning tenant.
    """

    entity_type: str
    event_kind: EventKind
    entity_snapshot: dict[str, Any]
    occurred_at: datetime | None = None
    previous_snapshot: dict[str, Any] | None = None
    tag: str | None = None
    form_id: str | None = None
    tenant_id: str | None = None

    @property
    def entity_id(self) -> Any:
        """Identifier of the entity, taken from the snapshot."""
        return self.entity_snapshot.get("id")

    @property
    def revision(self) -> str:
        """Marker telling distinct changes of one entity apart.

        The commit time when known, else the snapshot's ``updated_at``, else a
        digest of the snapshot. A redelivered event yields the same marker.
        """
        if self.occurred_at is not None:
            return self.occurred_at.isoformat()
        updated_at = self.entity_snapshot.get("updated_at")
        if updated_at is not None:
            return str(json_safe(updated_at))
        payload = json.dumps(json_safe(self.entity_snapshot), sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()[:16]

    def to_trigger_data(self) -> dict[str, Any]:
        """JSON-safe snapshot stored on executions created from this event."""
        data: dict[str, Any] = {
            "entity_type": self.entity_type,
            "event_kind": str(self.event_kind),
            "entity_id": json_safe(self.entity_id),
            "entity": json_safe(self.entity_snapshot),
            "occurred_at": json_safe(self.occurred_at),
        }
        if self.previous_snapshot is not None:
            data["previous"] = json_safe(self.previous_snapshot)
        if self.tag is not None:
            data["tag"] = self.tag
        if self.form_id is not None:
            data["form_id"] = self.form_id
        return data


def json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [json_safe(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
