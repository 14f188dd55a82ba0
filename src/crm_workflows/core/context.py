"""Execution context handed to action handlers and conditions.

This module provides the ActionContext dataclass passed to every action
handler, and the scope builder that decides which variables conditions see.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from uuid import UUID

if TYPE_CHECKING:
    from collections.abc import Mapping

    from crm_workflows.core.types import Scope

__all__ = ["ActionContext", "build_scope"]


@dataclass
class ActionContext:
    """Context passed to an action handler for one attempt.

    Handlers may run more than once for the same node (retries, or a crashed
    worker whose lease expired), so they should be idempotent or check current
    entity state before acting. ``attempt`` tells them which attempt this is.

    Attributes:
        execution_id: Execution being advanced.
        workflow_id: Workflow definition id.
        workflow_name: Workflow definition name.
        node_id: Action node being run.
        action: Action name (``data.action`` of the node).
        params: Static node configuration.
        trigger_data: Immutable snapshot of the triggering event.
        outputs: Outputs of earlier action nodes in this execution.
        attempt: 1-based attempt number.
        tenant_id: Owning tenant.

    Example:
        >>> async def send_email(context: ActionContext) -> dict:
        ...     lead = context.entity
        ...     await mailer.send(to=lead["email"], template=context.params["template"])
        ...     return {"sent_to": lead["email"]}
    """

    execution_id: UUID
    workflow_id: UUID
    workflow_name: str
    node_id: str
    action: str
    params: dict[str, Any] = field(default_factory=dict)
    trigger_data: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    tenant_id: str | None = None

    @property
    def entity(self) -> dict[str, Any]:
        """Snapshot of the triggering entity, empty for manual or scheduled runs."""
        return self.trigger_data.get("entity") or {}

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a param, falling back to the trigger data.

        Example:
            >>> context.get("template", "welcome")
            'welcome'
        """
        if key in self.params:
            return self.params[key]
        return self.trigger_data.get(key, default)


def build_scope(trigger_data: Mapping[str, Any], outputs: Mapping[str, Any]) -> Scope:
    """Build the variables visible to condition expressions.

    Top-level trigger fields and the entity's own fields are exposed directly
    (``amount``), the entity also under its type (``lead.score``), the raw
    trigger under ``trigger`` and action outputs under ``steps.<node_id>`` as
    well as any ``output_key`` they were stored with.

    Args:
        trigger_data: Snapshot of the triggering event.
        outputs: Action outputs recorded so far.

    Returns:
        The scope dictionary.
    """
    scope: Scope = dict(trigger_data)
    entity = trigger_data.get("entity")
    if isinstance(entity, dict):
        for key, value in entity.items():
            scope.setdefault(key, value)
        entity_type = trigger_data.get("entity_type")
        if isinstance(entity_type, str) and entity_type:
            scope[entity_type] = entity
    scope["trigger"] = dict(trigger_data)
    steps = outputs.get("steps") if isinstance(outputs.get("steps"), dict) else {}
    scope["steps"] = steps
    for key, value in outputs.items():
        if key != "steps":
            scope[key] = value
    return scope
