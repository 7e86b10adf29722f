"""
In-process event bus used to notify application code of session and
connectivity changes.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List


logger = logging.getLogger("propdesk_api")

AUTH_LOGOUT = "auth:logout"
NETWORK_ERROR = "network:error"
WS_OPEN = "ws:open"
WS_CLOSE = "ws:close"
WS_MESSAGE = "ws:message"

EventHandler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe by event name."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[EventHandler]] = defaultdict(list)

    def on(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to an event. Returns a callable that unsubscribes."""
        self._handlers[event].append(handler)
        return lambda: self.off(event, handler)

    def off(self, event: str, handler: EventHandler) -> None:
        """Unsubscribe a handler; unknown handlers are ignored."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Any = None) -> None:
        """Call every handler subscribed to the event, in subscription order."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(payload)
            except Exception:
                logger.exception("Event handler for %r failed", event)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))
