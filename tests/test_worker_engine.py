"""
Tests for the executor-backed computation engine and the fallback path.
"""

from concurrent.futures import BrokenExecutor
from unittest.mock import MagicMock

import pytest

from compass_analytics.errors import FallbackError
from compass_analytics.models import AnalyticsData, AnalyticsResults, Student
from compass_analytics.worker.engine import ComputeOutput, ExecutorEngine, executor_engine_factory
from compass_analytics.worker.fallback import FallbackComputation, basic_insights
from compass_analytics.worker.messages import (
    AlertsMessage,
    CompleteMessage,
    ErrorMessage,
    InsightsComputePayload,
    InsightsComputeTask,
    ProgressMessage,
)

from tests.conftest import until, worker_results


def make_task(data, prewarm=False) -> InsightsComputeTask:
    return InsightsComputeTask(
        request_id="r1",
        cache_key="k1",
        payload=InsightsComputePayload(inputs=data, prewarm=prewarm),
    )


async def run_one(engine: ExecutorEngine, task: InsightsComputeTask, messages: list) -> None:
    engine.post(task)
    await until(
        lambda: any(isinstance(m, (CompleteMessage, ErrorMessage)) for m in messages),
        iterations=500,
        interval=0.01,
    )


# =============================================================================
# EXECUTOR ENGINE
# =============================================================================

class TestExecutorEngine:
    """Message sequence emitted per task."""

    @pytest.mark.asyncio
    async def test_progress_then_complete(self, sample_data):
        messages = []
        engine = ExecutorEngine(lambda data, config, use_ai: worker_results(), messages.append)

        await run_one(engine, make_task(sample_data), messages)
        engine.terminate()

        assert isinstance(messages[0], ProgressMessage)
        assert messages[0].progress.stage == "started"
        complete = messages[-1]
        assert isinstance(complete, CompleteMessage)
        assert complete.request_id == "r1"
        assert complete.cache_key == "k1"
        assert complete.payload == worker_results()

    @pytest.mark.asyncio
    async def test_alerts_emitted_before_complete(self, sample_data):
        messages = []
        alerts = [{"id": "a1", "kind": "escalation"}]

        def compute(data, config, use_ai):
            return ComputeOutput(results=worker_results(), alerts=alerts, student_id="s1")

        engine = ExecutorEngine(compute, messages.append)
        await run_one(engine, make_task(sample_data, prewarm=True), messages)
        engine.terminate()

        kinds = [type(m) for m in messages]
        assert kinds == [ProgressMessage, AlertsMessage, CompleteMessage]
        assert messages[1].payload.student_id == "s1"
        assert messages[1].payload.prewarm is True
        assert messages[2].prewarm is True

    @pytest.mark.asyncio
    async def test_compute_error_becomes_error_message(self, sample_data):
        messages = []

        def compute(data, config, use_ai):
            raise ValueError("bad data")

        engine = ExecutorEngine(compute, messages.append)
        await run_one(engine, make_task(sample_data), messages)
        engine.terminate()

        assert isinstance(messages[-1], ErrorMessage)
        assert messages[-1].error == "bad data"

    @pytest.mark.asyncio
    async def test_broken_executor_reports_runtime_error(self, sample_data):
        messages = []
        on_runtime_error = MagicMock()

        def compute(data, config, use_ai):
            raise BrokenExecutor("pool died")

        engine = ExecutorEngine(compute, messages.append, on_runtime_error=on_runtime_error)
        engine.post(make_task(sample_data))
        await until(lambda: on_runtime_error.called, iterations=500, interval=0.01)
        engine.terminate()

        assert not any(isinstance(m, (CompleteMessage, ErrorMessage)) for m in messages)

    @pytest.mark.asyncio
    async def test_post_after_terminate_raises(self, sample_data):
        engine = ExecutorEngine(lambda *args: worker_results(), MagicMock())
        engine.terminate()
        engine.terminate()

        assert engine.is_terminated
        with pytest.raises(RuntimeError):
            engine.post(make_task(sample_data))

    @pytest.mark.asyncio
    async def test_factory_builds_engine(self):
        factory = executor_engine_factory(lambda *args: worker_results())
        engine = await factory(MagicMock(), MagicMock())

        assert isinstance(engine, ExecutorEngine)
        engine.terminate()


# =============================================================================
# FALLBACK
# =============================================================================

class TestBasicInsights:
    """Heuristic summary."""

    def test_summary(self, sample_data):
        result = basic_insights(sample_data, student=Student(id="s1", name="Alex"))

        assert result.ai.provider == "heuristic"
        assert result.is_ai is False
        assert result.insights[0] == "Alex: 2 sessions, 3 emotion records, 1 sensory inputs."
        assert result.patterns == [{"type": "emotion", "pattern": "calm", "frequency": 2}]

    def test_empty_data(self):
        result = basic_insights(AnalyticsData())
        assert result.insights == ["No tracking data available for Student yet."]
        assert result.patterns == []


class TestFallbackComputation:
    """Off-loop fallback with error normalization."""

    @pytest.mark.asyncio
    async def test_compute(self, sample_data):
        result = await FallbackComputation().compute(sample_data)
        assert isinstance(result, AnalyticsResults)

    @pytest.mark.asyncio
    async def test_dict_result_validated(self, sample_data):
        fallback = FallbackComputation(lambda data, use_ai, student: {"insights": ["from dict"]})
        result = await fallback.compute(sample_data)
        assert result.insights == ["from dict"]

    @pytest.mark.asyncio
    async def test_failure_raises_fallback_error(self, sample_data):
        def broken(data, use_ai, student):
            raise RuntimeError("heuristics crashed")

        with pytest.raises(FallbackError, match="heuristics crashed"):
            await FallbackComputation(broken).compute(sample_data)

    @pytest.mark.asyncio
    async def test_invalid_shape_raises_fallback_error(self, sample_data):
        with pytest.raises(FallbackError):
            await FallbackComputation(lambda *args: "not a result").compute(sample_data)

    @pytest.mark.asyncio
    async def test_compute_or_minimal(self, sample_data):
        def broken(data, use_ai, student):
            raise RuntimeError("heuristics crashed")

        result = await FallbackComputation(broken).compute_or_minimal(sample_data)
        assert result.insights == ["Analytics temporarily unavailable."]
