"""
Action dispatch for ACTION nodes.

The run service hands each ACTION transition to an ``ActionDispatcher``.
``ActionRegistry`` is the in-process implementation: handlers are plain
callables registered under an action name.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from guidance_engine.errors import DispatchFailure

logger = logging.getLogger(__name__)


@dataclass
class ActionInput:
    """What an action handler receives."""

    tenant_id: str | None
    run_id: str
    user_id: str | None = None
    args: dict[str, Any] = field(default_factory=dict)


ActionHandler = Callable[[ActionInput], Any]


class ActionDispatcher(Protocol):
    def dispatch(self, action: str, payload: ActionInput) -> Any: ...


class ActionRegistry:
    """Name-to-handler dispatcher."""

    def __init__(self, handlers: dict[str, ActionHandler] | None = None):
        self._handlers: dict[str, ActionHandler] = dict(handlers or {})

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def unregister(self, name: str) -> bool:
        return self._handlers.pop(name, None) is not None

    def actions(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, action: str, payload: ActionInput) -> Any:
        """Run the handler for ``action``.

        Raises:
            DispatchFailure: If no handler is registered or the handler raises
        """
        handler = self._handlers.get(action)
        if handler is None:
            raise DispatchFailure(action, f"Unknown action: {action}")

        try:
            return handler(payload)
        except DispatchFailure:
            raise
        except Exception as e:
            raise DispatchFailure(action, f"Action {action} failed: {e}") from e
