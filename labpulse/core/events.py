"""Synchronous event handler registry.

Handlers are called in registration order. A failing handler is logged and
skipped; it never prevents the remaining handlers from running.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

EventHandler = Callable[..., Any]


class EventEmitter:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> EventHandler:
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: EventHandler) -> bool:
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        return True

    def emit(self, event: str, *args: Any) -> int:
        """Call every handler for ``event``. Returns how many succeeded."""
        succeeded = 0
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception(f"Handler {getattr(handler, '__name__', handler)!r} failed for {event}")
                continue
            succeeded += 1
        return succeeded

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def clear(self) -> None:
        self._handlers.clear()
