"""
Cache Invalidation Service

Event-driven cache invalidation with minimal scope.
Principle: Invalidate as narrowly as possible.

Events trigger targeted cache invalidation:
- CLEAR_SUBJECT with a subject id: drop that subject's tag only
- CLEAR_SUBJECT without a subject id: full clear
- CLEAR_ALL: full clear
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from compass_analytics.cache.events import CacheEvent, CacheEventBus
from compass_analytics.cache.store import AnalyticsCache
from compass_analytics.cache.tags import subject_tag


logger = logging.getLogger(__name__)


@dataclass
class InvalidationResult:
    """Result of a cache invalidation operation."""
    event: CacheEvent
    success: bool
    keys_invalidated: int
    duration_ms: float
    subject_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)


class CacheInvalidator:
    """
    Applies invalidation signals to the analytics cache.

    Each event type has a specific invalidation scope.
    """

    def __init__(self, cache: AnalyticsCache):
        self._cache = cache
        self._unsubscribers: List[Callable[[], None]] = []

    def bind(self, bus: CacheEventBus) -> None:
        """Subscribe to the clear signals on the bus."""
        if self._unsubscribers:
            return
        self._unsubscribers.append(
            bus.subscribe(CacheEvent.CLEAR_ALL, lambda detail: self.handle_event(CacheEvent.CLEAR_ALL))
        )
        self._unsubscribers.append(
            bus.subscribe(
                CacheEvent.CLEAR_SUBJECT,
                lambda detail: self.handle_event(
                    CacheEvent.CLEAR_SUBJECT, subject_id=detail.get("subject_id")
                ),
            )
        )

    def unbind(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()

    def handle_event(
        self,
        event: CacheEvent,
        subject_id: Optional[str] = None,
    ) -> InvalidationResult:
        """Handle cache invalidation for an event."""
        start_time = time.perf_counter()
        errors = []
        keys_invalidated = 0

        try:
            if event == CacheEvent.CLEAR_SUBJECT and subject_id:
                keys_invalidated = self._cache.invalidate_by_tag(subject_tag(subject_id))

            elif event in (CacheEvent.CLEAR_SUBJECT, CacheEvent.CLEAR_ALL):
                # No subject means the signal is global
                keys_invalidated = self._cache.clear()

            else:
                logger.debug(f"No invalidation scope for event {event.value}")

        except Exception as e:
            errors.append(str(e))
            logger.error(f"Cache invalidation error: {e}")

        duration = (time.perf_counter() - start_time) * 1000

        logger.info(
            f"Invalidation {event.value} (subject={subject_id}): "
            f"{keys_invalidated} keys, duration: {duration:.2f}ms"
        )

        return InvalidationResult(
            event=event,
            success=len(errors) == 0,
            keys_invalidated=keys_invalidated,
            duration_ms=duration,
            subject_id=subject_id,
            errors=errors,
        )

    def invalidate_subject(self, subject_id: str) -> InvalidationResult:
        return self.handle_event(CacheEvent.CLEAR_SUBJECT, subject_id=subject_id)

    def clear_all(self) -> InvalidationResult:
        return self.handle_event(CacheEvent.CLEAR_ALL)
