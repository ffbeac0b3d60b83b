"""
Tests for the worker message handler.

These tests verify:
- complete writes the cache and resolves the request exactly once
- Late results are still cached
- error rejects without caching
- progress/partial extend the watchdog
- alerts are forwarded and published
- Malformed messages are discarded
"""

import asyncio
import logging
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from pydantic import BaseModel

from compass_analytics.cache.events import CacheEvent, CacheEventBus
from compass_analytics.cache.store import AnalyticsCache
from compass_analytics.cache.tags import TAG_WORKER
from compass_analytics.errors import ComputationError
from compass_analytics.worker.handlers import MessageHandler
from compass_analytics.worker.inflight import InFlightRegistry, InFlightRequest
from compass_analytics.worker.messages import (
    AlertsMessage,
    AlertsPayload,
    CompleteMessage,
    ErrorMessage,
    PartialMessage,
    ProgressMessage,
)

from tests.conftest import worker_results


class Harness:
    """Handler wired to a real cache and registry, mocked collaborators."""

    def __init__(self, clock):
        self.cache = AnalyticsCache(ttl=timedelta(minutes=10), clock=clock)
        self.registry = InFlightRegistry()
        self.watchdog = MagicMock()
        self.lifecycle = MagicMock()
        self.bus = CacheEventBus()
        self.sink = MagicMock()
        self.handler = MessageHandler(
            self.cache,
            self.registry,
            self.watchdog,
            self.lifecycle,
            bus=self.bus,
            alert_sink=self.sink,
            clock=clock,
        )

    def register(self, data, request_id="r1", cache_key="k1", **kwargs) -> InFlightRequest:
        request = InFlightRequest(
            request_id=request_id,
            cache_key=cache_key,
            future=asyncio.get_running_loop().create_future(),
            data=data,
            tags={"subject-s1", "analytics"},
            **kwargs,
        )
        self.registry.add(request)
        return request


@pytest.fixture
def harness(clock) -> Harness:
    return Harness(clock)


# =============================================================================
# COMPLETE
# =============================================================================

class TestComplete:
    """Final results."""

    @pytest.mark.asyncio
    async def test_caches_and_resolves(self, harness, sample_data):
        request = harness.register(sample_data)
        result = worker_results()

        harness.handler.handle(CompleteMessage(request_id="r1", cache_key="k1", payload=result))

        assert request.future.result() == result
        entry = harness.cache.peek("k1")
        assert entry.value == result
        assert harness.cache.tags_for("k1") == {"subject-s1", "analytics", TAG_WORKER}
        harness.watchdog.clear.assert_called_once_with("r1")
        harness.lifecycle.record_completion.assert_called_once()

    @pytest.mark.asyncio
    async def test_correlates_by_cache_key(self, harness, sample_data):
        request = harness.register(sample_data)
        harness.handler.handle({"type": "complete", "cache_key": "k1", "payload": {"insights": ["x"]}})

        assert request.future.result().insights == ["x"]

    @pytest.mark.asyncio
    async def test_duplicate_complete_resolves_once(self, harness, sample_data):
        request = harness.register(sample_data)
        first = worker_results("first")
        second = worker_results("second")

        harness.handler.handle(CompleteMessage(request_id="r1", cache_key="k1", payload=first))
        harness.handler.handle(CompleteMessage(request_id="r1", cache_key="k1", payload=second))

        assert request.future.result() == first
        assert harness.cache.peek("k1").value == second

    def test_late_complete_is_cached(self, harness):
        harness.handler.handle(CompleteMessage(cache_key="late-key", payload=worker_results()))

        assert harness.cache.peek("late-key") is not None
        assert TAG_WORKER in harness.cache.tags_for("late-key")
        assert "analytics" in harness.cache.tags_for("late-key")
        harness.lifecycle.record_completion.assert_not_called()

    def test_late_complete_keeps_stored_tags(self, harness):
        harness.cache.set("k1", worker_results("old"), {"subject-s9"})
        harness.handler.handle(CompleteMessage(cache_key="k1", payload=worker_results("new")))

        assert harness.cache.tags_for("k1") == {"subject-s9", TAG_WORKER}

    def test_uncorrelated_complete_discarded(self, harness, caplog):
        with caplog.at_level(logging.WARNING):
            harness.handler.handle(CompleteMessage(request_id="nobody", payload=worker_results()))

        assert harness.cache.size == 0
        assert "without request correlation" in caplog.text


# =============================================================================
# ERROR
# =============================================================================

class TestError:
    """Recoverable engine failures."""

    @pytest.mark.asyncio
    async def test_rejects_without_caching(self, harness, sample_data):
        request = harness.register(sample_data)
        harness.handler.handle(ErrorMessage(request_id="r1", error="bad input"))

        with pytest.raises(ComputationError, match="bad input"):
            request.future.result()
        assert harness.cache.size == 0
        harness.watchdog.clear.assert_called_once_with("r1")

    @pytest.mark.asyncio
    async def test_error_after_complete_ignored(self, harness, sample_data):
        request = harness.register(sample_data)
        harness.handler.handle(CompleteMessage(request_id="r1", cache_key="k1", payload=worker_results()))
        harness.handler.handle(ErrorMessage(request_id="r1", error="late"))

        assert request.future.exception() is None

    def test_unknown_request(self, harness):
        harness.handler.handle(ErrorMessage(request_id="nobody"))
        harness.watchdog.clear.assert_not_called()


# =============================================================================
# PROGRESS AND PARTIAL
# =============================================================================

class TestProgress:
    """Heartbeats and interim results."""

    @pytest.mark.asyncio
    async def test_progress_extends_watchdog(self, harness, sample_data):
        harness.register(sample_data)
        harness.handler.handle(ProgressMessage(request_id="r1"))
        harness.watchdog.extend.assert_called_once_with("r1")

    @pytest.mark.asyncio
    async def test_partial_forwards_payload(self, harness, sample_data):
        on_partial = MagicMock()
        harness.register(sample_data, on_partial=on_partial)

        harness.handler.handle(PartialMessage(cache_key="k1", payload={"patterns": [1]}))

        on_partial.assert_called_once_with({"patterns": [1]})
        harness.watchdog.extend.assert_called_once_with("r1")

    @pytest.mark.asyncio
    async def test_partial_callback_error_contained(self, harness, sample_data):
        request = harness.register(sample_data, on_partial=MagicMock(side_effect=RuntimeError("ui gone")))
        harness.handler.handle(PartialMessage(request_id="r1", payload={}))
        assert not request.future.done()

    @pytest.mark.asyncio
    async def test_progress_after_settle_ignored(self, harness, sample_data):
        request = harness.register(sample_data)
        request.resolve(worker_results())
        harness.handler.handle(ProgressMessage(request_id="r1"))
        harness.watchdog.extend.assert_not_called()


# =============================================================================
# ALERTS
# =============================================================================

class TestAlerts:
    """Alert events discovered by the engine."""

    def test_forwards_and_publishes(self, harness, clock):
        published = []
        harness.bus.subscribe(CacheEvent.ALERTS_UPDATED, published.append)
        alerts = [{"id": "a1", "student_id": "s1"}, {"id": "a2", "student_id": "s1"}]

        harness.handler.handle(AlertsMessage(payload=AlertsPayload(alerts=alerts)))

        harness.sink.assert_called_once_with("s1", alerts)
        assert published == [{"student_id": "s1", "count": 2}]
        assert harness.handler.last_alerts_received_at == clock.now

    def test_prewarm_alerts_not_published(self, harness):
        published = []
        harness.bus.subscribe(CacheEvent.ALERTS_UPDATED, published.append)

        harness.handler.handle(AlertsMessage(payload=AlertsPayload(student_id="s1", prewarm=True)))

        harness.sink.assert_called_once()
        assert published == []

    def test_alerts_without_student_dropped(self, harness, caplog):
        with caplog.at_level(logging.WARNING):
            harness.handler.handle(AlertsMessage(payload=AlertsPayload(alerts=[{"id": "a1"}])))

        harness.sink.assert_not_called()
        assert harness.handler.last_alerts_received_at is None
        assert "without a student id" in caplog.text


# =============================================================================
# PROTOCOL
# =============================================================================

class TestProtocol:
    """Malformed input and dispatch table coverage."""

    def test_malformed_message_discarded(self, harness, caplog):
        with caplog.at_level(logging.WARNING):
            harness.handler.handle({"type": "complete"})
            harness.handler.handle({"type": "mystery"})
            harness.handler.handle(42)

        assert harness.cache.size == 0
        assert caplog.text.count("Discarding malformed worker message") == 3

    def test_missing_dispatch_entry_fails_construction(self, clock):
        class TelemetryMessage(BaseModel):
            type: str = "telemetry"

        extended = (ProgressMessage, PartialMessage, CompleteMessage, ErrorMessage, AlertsMessage, TelemetryMessage)
        with patch("compass_analytics.worker.handlers.MESSAGE_TYPES", extended):
            with pytest.raises(TypeError, match="TelemetryMessage"):
                Harness(clock)

    def test_handler_exception_contained(self, harness, caplog):
        harness.cache.set = MagicMock(side_effect=RuntimeError("disk full"))
        with caplog.at_level(logging.ERROR):
            harness.handler.handle(CompleteMessage(cache_key="k", payload=worker_results()))
        assert "Error handling worker complete message" in caplog.text
