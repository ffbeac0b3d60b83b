"""
Tests for the worker lifecycle manager and its circuit breaker.

These tests verify:
- Concurrent acquisitions share one initialization
- Reference counting tears the handle down on the last release
- The circuit opens after repeated failures and closes after cooldown
- Tasks dispatched during initialization are queued and flushed
- Watchdog expiries tear the handle down and consecutive ones open the circuit
- Runtime errors reset the handle
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from compass_analytics.config.analytics import WorkerSettings
from compass_analytics.worker.lifecycle import (
    CircuitBreaker,
    WorkerLifecycleManager,
    WorkerState,
)
from compass_analytics.worker.messages import InsightsComputePayload, InsightsComputeTask, ProgressMessage

from tests.conftest import FakeEngine, FakeEngineFactory, until


def make_task(sample_data, request_id: str = "r1") -> InsightsComputeTask:
    return InsightsComputeTask(
        request_id=request_id,
        cache_key=f"key-{request_id}",
        payload=InsightsComputePayload(inputs=sample_data),
    )


@pytest.fixture
def manager(engine_factory, clock) -> WorkerLifecycleManager:
    return WorkerLifecycleManager(engine_factory, WorkerSettings(), clock=clock)


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class TestCircuitBreaker:
    """Sliding window failure counting."""

    def test_opens_at_threshold(self, clock):
        breaker = CircuitBreaker(threshold=3, window_seconds=60, cooldown_seconds=15, clock=clock)

        assert breaker.record_failure() is False
        assert breaker.record_failure() is False
        assert breaker.record_failure() is True
        assert breaker.is_available() is False

    def test_cooldown_closes(self, clock):
        breaker = CircuitBreaker(threshold=1, cooldown_seconds=15, clock=clock)
        breaker.record_failure()

        clock.advance(14)
        assert breaker.is_available() is False
        assert breaker.remaining_cooldown() == pytest.approx(1.0)

        clock.advance(1)
        assert breaker.is_available() is True
        assert breaker.state.failures == []

    def test_old_failures_leave_window(self, clock):
        breaker = CircuitBreaker(threshold=3, window_seconds=60, clock=clock)
        breaker.record_failure()
        breaker.record_failure()
        clock.advance(61)

        assert breaker.record_failure() is False
        assert breaker.is_available() is True

    def test_success_clears(self, clock):
        breaker = CircuitBreaker(threshold=2, clock=clock)
        breaker.record_failure()
        breaker.record_success()
        assert breaker.record_failure() is False

    def test_trip(self, clock):
        breaker = CircuitBreaker(clock=clock)
        breaker.trip(60)
        clock.advance(59)
        assert breaker.is_available() is False
        clock.advance(1)
        assert breaker.is_available() is True


# =============================================================================
# ACQUISITION
# =============================================================================

class TestAcquisition:
    """retain/release and shared initialization."""

    @pytest.mark.asyncio
    async def test_retain_initializes_once(self, manager, engine_factory):
        results = await asyncio.gather(manager.retain(), manager.retain(), manager.retain())

        assert all(result.ready for result in results)
        assert all(result.retained for result in results)
        assert engine_factory.calls == 1
        assert manager.ref_count == 3
        assert manager.state == WorkerState.READY
        assert results[0].handle is engine_factory.engine

    @pytest.mark.asyncio
    async def test_last_release_tears_down(self, manager, engine_factory):
        await manager.retain()
        await manager.retain()

        manager.release()
        assert manager.state == WorkerState.READY
        assert engine_factory.engine.terminated is False

        manager.release()
        assert manager.state == WorkerState.UNINITIALIZED
        assert manager.handle is None
        assert engine_factory.engine.terminated is True

    @pytest.mark.asyncio
    async def test_extra_release_ignored(self, manager):
        manager.release()
        assert manager.ref_count == 0

    @pytest.mark.asyncio
    async def test_reacquire_creates_new_handle(self, manager, engine_factory):
        await manager.retain()
        manager.release()
        await manager.retain()

        assert engine_factory.calls == 2
        assert manager.is_ready

    @pytest.mark.asyncio
    async def test_async_factory(self, clock):
        async def factory(on_message, on_runtime_error):
            await asyncio.sleep(0)
            return FakeEngine(on_message, on_runtime_error)

        manager = WorkerLifecycleManager(factory, clock=clock)
        result = await manager.retain()

        assert result.ready is True
        assert isinstance(manager.handle, FakeEngine)

    @pytest.mark.asyncio
    async def test_released_during_initialization(self, clock):
        gate = asyncio.Event()
        engines = []

        async def factory(on_message, on_runtime_error):
            await gate.wait()
            engine = FakeEngine(on_message, on_runtime_error)
            engines.append(engine)
            return engine

        manager = WorkerLifecycleManager(factory, clock=clock)
        pending = asyncio.ensure_future(manager.retain())
        await until(lambda: manager.state == WorkerState.INITIALIZING)

        manager.release()
        gate.set()
        result = await pending

        assert result.ready is False
        assert engines[0].terminated is True
        assert manager.state == WorkerState.UNINITIALIZED
        assert manager.handle is None


# =============================================================================
# CIRCUIT INTEGRATION
# =============================================================================

class TestCircuitIntegration:
    """Initialization failures feed the breaker."""

    @pytest.mark.asyncio
    async def test_single_failure_stays_uninitialized(self, clock):
        manager = WorkerLifecycleManager(FakeEngineFactory(failures=1), clock=clock)
        result = await manager.retain()

        assert result.ready is False
        assert result.error == "engine failed to start"
        assert manager.state == WorkerState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_three_failures_open_circuit(self, clock):
        factory = FakeEngineFactory(failures=3)
        manager = WorkerLifecycleManager(factory, clock=clock)

        for _ in range(3):
            await manager.retain()
        assert manager.state == WorkerState.CIRCUIT_OPEN

        result = await manager.retain()
        assert result.ready is False
        assert result.state == WorkerState.CIRCUIT_OPEN
        assert factory.calls == 3

        clock.advance(15)
        assert manager.state == WorkerState.UNINITIALIZED
        result = await manager.retain()
        assert result.ready is True
        assert factory.calls == 4

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_open(self, clock):
        manager = WorkerLifecycleManager(FakeEngineFactory(failures=3), clock=clock)

        for _ in range(3):
            await manager.retain()
            clock.advance(31)

        assert manager.state == WorkerState.UNINITIALIZED

    def test_status_reports_cooldown(self, clock):
        manager = WorkerLifecycleManager(FakeEngineFactory(), clock=clock)
        manager.report_runtime_error(RuntimeError("crash"))

        status = manager.status()
        assert status["state"] == "circuit-open"
        assert status["circuit_cooldown_remaining_s"] == 60.0


# =============================================================================
# DISABLED
# =============================================================================

class TestDisabled:
    """Terminal disabled state."""

    @pytest.mark.asyncio
    async def test_disabled_never_creates_handle(self, engine_factory, clock):
        manager = WorkerLifecycleManager(engine_factory, disabled=True, clock=clock)
        result = await manager.retain()

        assert result.ready is False
        assert result.retained is False
        assert result.state == WorkerState.DISABLED
        assert manager.ref_count == 0
        assert engine_factory.calls == 0

    @pytest.mark.asyncio
    async def test_disable_tears_down(self, manager, engine_factory):
        await manager.retain()
        manager.disable()

        assert engine_factory.engine.terminated is True
        assert manager.state == WorkerState.DISABLED
        manager.report_runtime_error(RuntimeError("late"))
        assert manager.state == WorkerState.DISABLED

    @pytest.mark.asyncio
    async def test_disable_keeps_existing_references(self, manager):
        await manager.retain()
        manager.disable()

        result = await manager.retain()
        assert result.retained is False
        assert manager.ref_count == 1

        manager.release()
        assert manager.ref_count == 0


# =============================================================================
# DISPATCH
# =============================================================================

class TestDispatch:
    """Posting tasks to the engine."""

    @pytest.mark.asyncio
    async def test_dispatch_when_ready(self, manager, engine_factory, sample_data):
        await manager.retain()
        task = make_task(sample_data)

        assert manager.dispatch(task) is True
        assert engine_factory.engine.posted == [task]

    def test_dispatch_without_handle(self, manager, sample_data):
        assert manager.dispatch(make_task(sample_data)) is False

    @pytest.mark.asyncio
    async def test_queued_during_initialization(self, clock, sample_data):
        gate = asyncio.Event()
        engines = []

        async def factory(on_message, on_runtime_error):
            await gate.wait()
            engine = FakeEngine(on_message, on_runtime_error)
            engines.append(engine)
            return engine

        manager = WorkerLifecycleManager(factory, clock=clock)
        pending = asyncio.ensure_future(manager.retain())
        await until(lambda: manager.state == WorkerState.INITIALIZING)

        first, second = make_task(sample_data, "r1"), make_task(sample_data, "r2")
        assert manager.dispatch(first) is True
        assert manager.dispatch(second) is True
        assert manager.pending_count == 2

        gate.set()
        await pending

        assert engines[0].posted == [first, second]
        assert manager.pending_count == 0

    @pytest.mark.asyncio
    async def test_post_failure_resets(self, manager, engine_factory, sample_data):
        await manager.retain()
        engine_factory.engine.post = MagicMock(side_effect=RuntimeError("channel closed"))

        assert manager.dispatch(make_task(sample_data)) is False
        assert manager.state == WorkerState.UNINITIALIZED
        assert manager.handle is None


# =============================================================================
# MESSAGES AND FAILURES
# =============================================================================

class TestMessagesAndFailures:
    """Listener fan-out, timeouts and runtime errors."""

    @pytest.mark.asyncio
    async def test_listeners_receive_messages(self, manager, engine_factory, sample_data, clock):
        received = []
        remove = manager.add_message_listener(received.append)
        manager.add_message_listener(MagicMock(side_effect=RuntimeError("listener broke")))
        await manager.retain()

        engine_factory.engine.progress(make_task(sample_data))
        assert len(received) == 1
        assert isinstance(received[0], ProgressMessage)
        assert manager.status()["last_message_at"] == clock.now

        remove()
        engine_factory.engine.progress(make_task(sample_data))
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_timeout_tears_down_and_keeps_references(self, manager, engine_factory):
        await manager.retain()

        assert manager.record_timeout() is False
        assert manager.state == WorkerState.UNINITIALIZED
        assert manager.handle is None
        assert engine_factory.engine.terminated is True
        assert manager.ref_count == 1
        assert manager.consecutive_timeouts == 1

        assert (await manager.ensure_initialized()).ready is True
        assert engine_factory.calls == 2

    @pytest.mark.asyncio
    async def test_second_consecutive_timeout_opens_circuit(self, manager, engine_factory, clock):
        await manager.retain()
        manager.record_timeout()
        await manager.ensure_initialized()

        assert manager.record_timeout() is True
        assert manager.state == WorkerState.CIRCUIT_OPEN
        assert manager.consecutive_timeouts == 0
        assert (await manager.ensure_initialized()).ready is False

        clock.advance(15)
        assert (await manager.ensure_initialized()).ready is True
        assert engine_factory.calls == 3

    @pytest.mark.asyncio
    async def test_completion_resets_timeout_count(self, manager):
        await manager.retain()
        manager.record_timeout()
        manager.record_completion()
        await manager.ensure_initialized()

        assert manager.record_timeout() is False
        assert manager.state == WorkerState.UNINITIALIZED

    def test_timeout_while_disabled_is_ignored(self, engine_factory, clock):
        manager = WorkerLifecycleManager(engine_factory, disabled=True, clock=clock)

        assert manager.record_timeout() is False
        assert manager.state == WorkerState.DISABLED
        assert manager.consecutive_timeouts == 0

    @pytest.mark.asyncio
    async def test_runtime_error_opens_circuit(self, manager, engine_factory, clock):
        await manager.retain()
        engine_factory.engine.on_runtime_error(RuntimeError("engine crashed"))

        assert manager.state == WorkerState.CIRCUIT_OPEN
        assert engine_factory.engine.terminated is True
        assert (await manager.ensure_initialized()).ready is False

        clock.advance(60)
        result = await manager.ensure_initialized()
        assert result.ready is True
        assert engine_factory.calls == 2

    @pytest.mark.asyncio
    async def test_reset_keeps_references(self, manager, engine_factory):
        await manager.retain()
        manager.reset("manual")

        assert manager.ref_count == 1
        assert manager.state == WorkerState.UNINITIALIZED
        assert (await manager.ensure_initialized()).ready is True
        assert engine_factory.calls == 2
