"""
Worker Message Handler

Routes each engine message kind to its side effects:

| type     | action                                                        |
|----------|---------------------------------------------------------------|
| partial  | forward to the request's progressive-update callback          |
| complete | write cache, resolve the request once, clear its watchdog     |
| alerts   | record timestamp, publish alerts:updated, forward to the sink |
| error    | reject the request, clear its watchdog, no cache write        |
| progress | extend the request's watchdog                                 |

The dispatch table must cover every message class of the protocol; a
missing entry fails at construction rather than silently dropping a kind.
Nothing raised in here ever reaches the engine.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Set

from compass_analytics.cache.events import CacheEvent, CacheEventBus
from compass_analytics.cache.store import AnalyticsCache
from compass_analytics.cache.tags import TAG_WORKER, extract_tags_from_data
from compass_analytics.errors import ComputationError, InvalidMessageError
from compass_analytics.worker.inflight import InFlightRegistry
from compass_analytics.worker.lifecycle import WorkerLifecycleManager
from compass_analytics.worker.messages import (
    MESSAGE_TYPES,
    AlertsMessage,
    CompleteMessage,
    ErrorMessage,
    PartialMessage,
    ProgressMessage,
    parse_worker_message,
)
from compass_analytics.worker.watchdog import RequestWatchdog


logger = logging.getLogger(__name__)

AlertSink = Callable[[str, List[Dict[str, Any]]], None]


class MessageHandler:
    """Applies engine messages to the cache and the in-flight requests."""

    def __init__(
        self,
        cache: AnalyticsCache,
        registry: InFlightRegistry,
        watchdog: RequestWatchdog,
        lifecycle: WorkerLifecycleManager,
        bus: Optional[CacheEventBus] = None,
        alert_sink: Optional[AlertSink] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = cache
        self._registry = registry
        self._watchdog = watchdog
        self._lifecycle = lifecycle
        self._bus = bus
        self._alert_sink = alert_sink
        self._clock = clock
        self._last_alerts_received_at: Optional[float] = None

        self._dispatch: Dict[type, Callable[[Any], None]] = {
            ProgressMessage: self._on_progress,
            PartialMessage: self._on_partial,
            CompleteMessage: self._on_complete,
            ErrorMessage: self._on_error,
            AlertsMessage: self._on_alerts,
        }
        missing = [cls.__name__ for cls in MESSAGE_TYPES if cls not in self._dispatch]
        if missing:
            raise TypeError(f"No handler registered for message types: {', '.join(missing)}")

    @property
    def last_alerts_received_at(self) -> Optional[float]:
        return self._last_alerts_received_at

    def handle(self, raw: Any) -> None:
        """Entry point for every message emitted by the engine."""
        try:
            message = parse_worker_message(raw)
        except InvalidMessageError as e:
            logger.warning(f"Discarding {e}")
            return

        try:
            self._dispatch[type(message)](message)
        except Exception as e:
            logger.error(f"Error handling worker {message.type} message: {e}")

    # =========================================================================
    # Handlers
    # =========================================================================

    def _on_progress(self, message: ProgressMessage) -> None:
        request = self._registry.find(message.request_id, message.cache_key)
        if request is None or request.settled:
            logger.debug(f"Progress for unknown or settled request {message.request_id}")
            return
        self._watchdog.extend(request.request_id)

    def _on_partial(self, message: PartialMessage) -> None:
        request = self._registry.find(message.request_id, message.cache_key)
        if request is None or request.settled:
            logger.debug(f"Partial result for unknown or settled request {message.request_id}")
            return

        self._watchdog.extend(request.request_id)
        if request.on_partial and message.payload is not None:
            try:
                request.on_partial(message.payload)
            except Exception as e:
                logger.warning(f"Partial update callback failed for {request.cache_key}: {e}")

    def _on_complete(self, message: CompleteMessage) -> None:
        request = self._registry.find(message.request_id, message.cache_key)
        cache_key = message.cache_key or (request.cache_key if request else None)

        if cache_key is None:
            logger.warning("Discarding complete message without request correlation or cache key")
            return

        self._cache.set(cache_key, message.payload, self._tags_for(cache_key, message, request))

        if request is None:
            logger.debug(f"Cached late result for {cache_key}")
            return

        self._watchdog.clear(request.request_id)
        self._lifecycle.record_completion()
        if request.resolve(message.payload):
            log = logger.debug if request.prewarm else logger.info
            log(f"Analytics computed by worker for {cache_key}")
        else:
            logger.debug(f"Duplicate or late complete for {cache_key}, cache refreshed")

    def _on_error(self, message: ErrorMessage) -> None:
        request = self._registry.find(message.request_id, message.cache_key)
        if request is None:
            logger.debug(f"Error for unknown request {message.request_id}: {message.error}")
            return

        self._watchdog.clear(request.request_id)
        self._lifecycle.record_completion()
        if request.reject(ComputationError(message.error, cache_key=request.cache_key)):
            log = logger.debug if request.prewarm else logger.warning
            log(f"Worker reported error for {request.cache_key}: {message.error}")

    def _on_alerts(self, message: AlertsMessage) -> None:
        payload = message.payload
        student_id = payload.target_student_id()
        if not student_id:
            logger.warning(f"Dropping {len(payload.alerts)} alerts without a student id")
            return

        self._last_alerts_received_at = self._clock()

        if self._alert_sink is not None:
            try:
                self._alert_sink(student_id, payload.alerts)
            except Exception as e:
                logger.error(f"Alert sink failed for student {student_id}: {e}")

        if not payload.prewarm and self._bus is not None:
            self._bus.publish(
                CacheEvent.ALERTS_UPDATED,
                {"student_id": student_id, "count": len(payload.alerts)},
            )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _tags_for(self, cache_key: str, message: CompleteMessage, request) -> Set[str]:
        if request is not None and request.tags:
            tags = set(request.tags)
        else:
            tags = self._cache.tags_for(cache_key) or extract_tags_from_data(message.payload)
        tags.add(TAG_WORKER)
        return tags
