"""
Pytest Configuration and Shared Fixtures

Provides fakes for the computation engine, a controllable clock and common
analytics inputs.
"""

import asyncio
from typing import Any, Callable, List, Optional

import pytest

from compass_analytics.config.analytics import AnalyticsConfiguration, ConfigSource
from compass_analytics.config.settings import Settings
from compass_analytics.models import AiMetadata, AnalyticsData, AnalyticsResults
from compass_analytics.worker.messages import (
    CompleteMessage,
    ErrorMessage,
    InsightsComputeTask,
    ProgressInfo,
    ProgressMessage,
)


# ============================================================================
# Fakes
# ============================================================================

class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEngine:
    """Computation engine that records tasks and replies on demand."""

    def __init__(self, on_message: Callable[[Any], None], on_runtime_error: Callable[[BaseException], None]):
        self.on_message = on_message
        self.on_runtime_error = on_runtime_error
        self.posted: List[InsightsComputeTask] = []
        self.terminated = False

    def post(self, task: InsightsComputeTask) -> None:
        self.posted.append(task)

    def terminate(self) -> None:
        self.terminated = True

    # Replies

    def complete(self, task: InsightsComputeTask, results: Optional[AnalyticsResults] = None) -> None:
        results = results or worker_results()
        self.on_message(CompleteMessage(
            request_id=task.request_id,
            cache_key=task.cache_key,
            payload=results,
            prewarm=task.payload.prewarm,
        ))

    def error(self, task: InsightsComputeTask, error: str = "boom") -> None:
        self.on_message(ErrorMessage(request_id=task.request_id, cache_key=task.cache_key, error=error))

    def progress(self, task: InsightsComputeTask) -> None:
        self.on_message(ProgressMessage(
            request_id=task.request_id,
            cache_key=task.cache_key,
            progress=ProgressInfo(stage="running", percent=50),
        ))


class FakeEngineFactory:
    """Engine factory that can be told to fail the next N initializations."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.calls = 0
        self.engines: List[FakeEngine] = []

    def __call__(self, on_message, on_runtime_error) -> FakeEngine:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("engine failed to start")
        engine = FakeEngine(on_message, on_runtime_error)
        self.engines.append(engine)
        return engine

    @property
    def engine(self) -> FakeEngine:
        return self.engines[-1]


class ImmediateIdleScheduler:
    """Runs idle callbacks on the next loop iteration."""

    def __init__(self):
        self.scheduled = 0

    def schedule_when_idle(self, fn, timeout_ms):
        self.scheduled += 1
        return asyncio.get_running_loop().call_soon(fn)


class AllowAll:
    """Device gate that always allows precomputation."""

    def __init__(self, allowed: bool = True):
        self.allowed = allowed
        self.calls = 0

    async def can_precompute(self, config=None) -> bool:
        self.calls += 1
        return self.allowed


async def until(predicate: Callable[[], bool], iterations: int = 200, interval: float = 0) -> None:
    """Yield to the loop until `predicate` holds."""
    for _ in range(iterations):
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not reached")


def worker_results(label: str = "worker") -> AnalyticsResults:
    return AnalyticsResults(
        insights=[f"computed by {label}"],
        ai=AiMetadata(provider="heuristic"),
    )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_factory() -> FakeEngineFactory:
    return FakeEngineFactory()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ANALYTICS_WORKER_DISABLED=False,
        ANALYTICS_POC_MODE=False,
        ANALYTICS_HEALTH_INTERVAL_SECONDS=3600.0,
        ANALYTICS_HEALTH_STALE_SECONDS=120.0,
    )


@pytest.fixture
def config_source() -> ConfigSource:
    return ConfigSource(AnalyticsConfiguration.model_validate({
        "worker": {"watchdog_timeout_ms": 5000},
        "precomputation": {"task_stagger_delay_ms": 0, "idle_timeout_ms": 0},
    }))


@pytest.fixture
def sample_data() -> AnalyticsData:
    return AnalyticsData(
        entries=[
            {"id": "e1", "student_id": "s1", "timestamp": "2024-03-01T09:00:00"},
            {"id": "e2", "student_id": "s1", "timestamp": "2024-03-02T09:00:00"},
        ],
        emotions=[
            {"id": "m1", "student_id": "s1", "emotion": "calm", "intensity": 3},
            {"id": "m2", "student_id": "s1", "emotion": "anxious", "intensity": 4},
            {"id": "m3", "student_id": "s1", "emotion": "calm", "intensity": 2},
        ],
        sensory_inputs=[
            {"id": "x1", "student_id": "s1", "sense": "auditory", "response": "avoiding"},
        ],
    )


@pytest.fixture
def other_data() -> AnalyticsData:
    return AnalyticsData(
        entries=[{"id": "e9", "student_id": "s2"}],
        emotions=[{"id": "m9", "student_id": "s2", "emotion": "happy"}],
    )
