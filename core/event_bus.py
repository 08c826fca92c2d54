"""Simple in-process event bus for decoupled event emission."""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable
from typing import Any

EventHandler = Callable[[str, dict[str, Any]], None]

WILDCARD = "*"


class EventBus:
    """Dispatches events to subscribers by event name.

    Handlers subscribed to ``"*"`` receive every event. Emission may happen
    from the scheduler thread and the monitoring ticker at the same time.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        """Register a callback for an event."""
        with self._lock:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> bool:
        with self._lock:
            handlers = self._handlers.get(event_name, [])
            if handler not in handlers:
                return False
            handlers.remove(handler)
            return True

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Emit an event to all subscribers."""
        with self._lock:
            handlers = list(self._handlers.get(event_name, []))
            handlers.extend(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            handler(event_name, payload)
