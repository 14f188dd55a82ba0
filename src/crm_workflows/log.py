"""Logging setup for crm-workflows.

Every module logs through ``structlog.get_logger(__name__)`` with key/value
context. Applications that do not configure structlog themselves can call
:func:`configure_logging` once at startup.
"""

from __future__ import annotations

import logging
import sys

import structlog

__all__ = ["configure_logging"]


def configure_logging(level: int | str = logging.INFO, *, json: bool = False) -> None:
    """Route structlog through the standard library with a console or JSON renderer.

    Args:
        level: Minimum level for the ``crm_workflows`` loggers.
        json: Render JSON lines instead of the coloured console format.
    """
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger("crm_workflows").setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
