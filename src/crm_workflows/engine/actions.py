"""Action capability registry.

Action nodes name a capability in ``data.action``; the registry maps that name
to the handler supplied by the surrounding application (email sender, task
creator, entity updater, webhook caller...).
"""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any

from crm_workflows.exceptions import ConfigurationError, TransientActionError, UnknownActionError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from datetime import timedelta

    from crm_workflows.core.context import ActionContext
    from crm_workflows.core.protocols import ActionHandler

__all__ = ["ActionRegistry"]


class ActionRegistry:
    """Mapping from action name to handler.

    Example:
        >>> actions = ActionRegistry()
        >>> @actions.action("send_email")
        ... async def send_email(context: ActionContext) -> dict:
        ...     return {"sent": True}
        >>> "send_email" in actions
        True
    """

    def __init__(self, handlers: dict[str, ActionHandler] | None = None) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        for name, handler in (handlers or {}).items():
            self.register(name, handler)

    def register(self, name: str, handler: ActionHandler) -> None:
        """Register a handler, replacing any previous handler for ``name``.

        Raises:
            ValueError: If the name is empty.
        """
        if not name:
            msg = "Action name must not be empty"
            raise ValueError(msg)
        self._handlers[name] = handler

    def action(self, name: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator registering the decorated function under ``name``."""

        def decorator(handler: ActionHandler) -> ActionHandler:
            self.register(name, handler)
            return handler

        return decorator

    def get(self, name: str) -> ActionHandler:
        """Look up a handler.

        Raises:
            UnknownActionError: If nothing is registered under ``name``.
        """
        try:
            return self._handlers[name]
        except KeyError:
            raise UnknownActionError(name) from None

    def names(self) -> list[str]:
        return sorted(self._handlers)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    def __iter__(self) -> Iterator[str]:
        return iter(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    async def invoke(self, context: ActionContext, timeout: timedelta | None = None) -> Any:
        """Run the handler for ``context.action``.

        Args:
            context: Context of this attempt.
            timeout: Maximum run time of the handler.

        Returns:
            The handler's output.

        Raises:
            ConfigurationError: If the action is unknown or the handler raised one.
            TransientActionError: For any other failure, including a timeout.
        """
        handler = self.get(context.action)
        try:
            result = handler(context)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout.total_seconds() if timeout else None)
        except (ConfigurationError, TransientActionError):
            raise
        except asyncio.TimeoutError as e:
            raise TransientActionError(context.action, TimeoutError(f"timed out after {timeout}")) from e
        except Exception as e:
            raise TransientActionError(context.action, e) from e
        return result
