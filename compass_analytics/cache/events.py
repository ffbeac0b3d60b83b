"""
Cache Event Bus

Explicit publish/subscribe channel shared by the analytics components.
Constructed once and passed to every interested component, so producers of
invalidation signals never need a reference to the cache itself.

Signals:
- CLEAR_ALL: drop every cached analytics result
- CLEAR_SUBJECT: drop results for one subject (payload {"subject_id": ...});
  without a subject id it behaves like CLEAR_ALL
- ALERTS_UPDATED: new alerts stored for a subject
- ALERTS_HEALTH: periodic alerts pipeline health summary
- CONFIG_CHANGED: analytics configuration changed
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


class CacheEvent(Enum):
    """Named signals carried by the bus."""

    CLEAR_ALL = "analytics:cache:clear"
    CLEAR_SUBJECT = "analytics:cache:clear:student"
    ALERTS_UPDATED = "alerts:updated"
    ALERTS_HEALTH = "alerts:health"
    CONFIG_CHANGED = "analytics:config:changed"


EventHandler = Callable[[Dict[str, Any]], None]


class CacheEventBus:
    """
    In-process publish/subscribe bus.

    Handlers run synchronously in subscription order. A failing handler is
    logged and skipped; it never prevents delivery to the others.
    """

    def __init__(self):
        self._handlers: Dict[CacheEvent, List[EventHandler]] = {}

    def subscribe(self, event: CacheEvent, handler: EventHandler) -> Callable[[], None]:
        """Register a handler; returns the matching unsubscribe function."""
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: CacheEvent, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver an event to its subscribers.

        Returns:
            Number of handlers that ran without raising
        """
        detail = payload or {}
        delivered = 0
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(detail)
                delivered += 1
            except Exception as e:
                logger.warning(f"Handler for {event.value} failed: {e}")
        return delivered

    def subscriber_count(self, event: CacheEvent) -> int:
        return len(self._handlers.get(event, []))

    # Convenience publishers

    def clear_all(self) -> int:
        return self.publish(CacheEvent.CLEAR_ALL)

    def clear_subject(self, subject_id: Optional[str] = None) -> int:
        return self.publish(CacheEvent.CLEAR_SUBJECT, {"subject_id": subject_id})
