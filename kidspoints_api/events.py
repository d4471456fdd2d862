"""
Session events broadcast to the UI/session layer.

Two events are emitted by the client:
- ``auth:logout`` once per failed refresh episode
- ``token:refreshed`` with the new access token after a successful refresh
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    AUTH_LOGOUT = "auth:logout"
    TOKEN_REFRESHED = "token:refreshed"


def _event_key(event) -> str:
    return event.value if isinstance(event, EventType) else event


class EventBus:
    """Synchronous publish/subscribe hub.

    A failing handler is logged and does not prevent the remaining handlers
    from running.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable[..., Any]]] = {}

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """Subscribe to an event. Returns a function that unsubscribes."""
        key = _event_key(event)
        self._subscribers.setdefault(key, []).append(handler)

        def unsubscribe() -> None:
            self.off(key, handler)

        return unsubscribe

    def off(self, event: str, handler: Callable[..., Any]) -> None:
        key = _event_key(event)
        handlers = self._subscribers.get(key)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._subscribers[key]

    def emit(self, event: str, *args: Any) -> None:
        key = _event_key(event)
        for handler in list(self._subscribers.get(key, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("Error in event handler for %s", key)

    def subscriber_count(self, event: str) -> int:
        key = _event_key(event)
        return len(self._subscribers.get(key, ()))

    # Convenience methods for session events

    def emit_auth_logout(self) -> None:
        self.emit(EventType.AUTH_LOGOUT)

    def on_auth_logout(self, callback: Callable[[], Any]) -> Callable[[], None]:
        return self.on(EventType.AUTH_LOGOUT, callback)

    def emit_token_refreshed(self, token: str) -> None:
        self.emit(EventType.TOKEN_REFRESHED, token)

    def on_token_refreshed(self, callback: Callable[[str], Any]) -> Callable[[], None]:
        return self.on(EventType.TOKEN_REFRESHED, callback)
