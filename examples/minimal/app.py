"""Minimal example of crm-workflows integration.

This example demonstrates the basic usage of the AutomationPlugin with a
lead follow-up workflow: new leads scoring 50 or more get an email, the rest
are tagged for nurturing a day later.

Run with:
    cd examples/minimal
    litestar run

Or:
    uvicorn app:app --reload

Then:
    curl -X POST localhost:8000/leads -H 'content-type: application/json' \\
        -d '{"id": "lead-1", "email": "ada@example.com", "score": 80}'
    curl localhost:8000/automations/executions
"""

from __future__ import annotations

import logging
from typing import Any

import structlog
from litestar import Litestar, get, post

from crm_workflows import (
    ActionContext,
    AutomationEngine,
    AutomationPlugin,
    AutomationPluginConfig,
    Workflow,
    configure_logging,
)

configure_logging(logging.INFO)
logger = structlog.get_logger(__name__)

# =============================================================================
# Actions
# =============================================================================

engine = AutomationEngine()


@engine.actions.action("send_email")
async def send_email(context: ActionContext) -> dict[str, Any]:
    """Pretend to send a templated email to the lead."""
    lead = context.entity
    logger.info("sending email", to=lead.get("email"), template=context.params.get("template"))
    return {"sent_to": lead.get("email")}


@engine.actions.action("apply_tag")
async def apply_tag(context: ActionContext) -> dict[str, Any]:
    """Pretend to tag the lead in the CRM."""
    logger.info("tagging lead", lead_id=context.entity.get("id"), tag=context.params["tag"])
    return {"tag": context.params["tag"]}


# =============================================================================
# Workflow Definition
# =============================================================================

LEAD_FOLLOWUP = Workflow.from_dict(
    {
        "name": "lead_followup",
        "trigger_type": "entity_created",
        "trigger_config": {"entity_type": "lead"},
        "max_concurrent_executions": 5,
        "nodes": [
            {"id": "start", "type": "trigger"},
            {"id": "qualify", "type": "condition", "data": {"condition": "lead.score >= 50"}},
            {"id": "email", "type": "action", "data": {"action": "send_email", "params": {"template": "hot_lead"}}},
            {"id": "wait", "type": "delay", "data": {"amount": 1, "unit": "days"}},
            {"id": "nurture", "type": "action", "data": {"action": "apply_tag", "params": {"tag": "nurture"}}},
            {"id": "done", "type": "end"},
        ],
        "edges": [
            {"id": "e1", "source": "start", "target": "qualify"},
            {"id": "e2", "source": "qualify", "target": "email", "label": "yes"},
            {"id": "e3", "source": "qualify", "target": "wait", "label": "no"},
            {"id": "e4", "source": "email", "target": "done"},
            {"id": "e5", "source": "wait", "target": "nurture"},
            {"id": "e6", "source": "nurture", "target": "done"},
        ],
    }
)

# =============================================================================
# Application
# =============================================================================


@post("/leads")
async def create_lead(data: dict[str, Any], automation_engine: AutomationEngine) -> dict[str, Any]:
    """Stand-in for the CRM's lead endpoint; reports the creation to the engine."""
    executions = await automation_engine.notify("lead", "created", data)
    return {"lead": data, "executions": [str(execution.id) for execution in executions]}


@get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


app = Litestar(
    route_handlers=[create_lead, health_check],
    plugins=[AutomationPlugin(config=AutomationPluginConfig(engine=engine, workflows=[LEAD_FOLLOWUP]))],
    debug=True,
)
