"""
Fallback Computation

Synchronous analytics used when the worker is unavailable, times out, or the
AI path fails. Runs in a thread so the event loop keeps serving other
requests, and always returns the same AnalyticsResults shape as the worker.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Callable, Optional

from compass_analytics.errors import FallbackError
from compass_analytics.models import (
    AiMetadata,
    AnalyticsData,
    AnalyticsResults,
    Student,
    minimal_results,
)


logger = logging.getLogger(__name__)

FallbackFn = Callable[[AnalyticsData, bool, Optional[Student]], Any]


def basic_insights(
    data: AnalyticsData,
    use_ai: bool = False,
    student: Optional[Student] = None,
) -> AnalyticsResults:
    """
    Lightweight heuristic summary of the data set.

    Only counts and the most frequent emotion; real pattern detection lives
    in the computation engine.
    """
    name = student.name if student else "Student"
    insights = []

    if not (data.entries or data.emotions or data.sensory_inputs):
        insights.append(f"No tracking data available for {name} yet.")
    else:
        insights.append(
            f"{name}: {len(data.entries)} sessions, {len(data.emotions)} emotion records, "
            f"{len(data.sensory_inputs)} sensory inputs."
        )

    emotions = Counter(
        str(e.get("emotion")) for e in data.emotions if e.get("emotion")
    )
    patterns = []
    if emotions:
        emotion, count = emotions.most_common(1)[0]
        patterns.append({"type": "emotion", "pattern": emotion, "frequency": count})
        insights.append(f"Most frequent emotion: {emotion} ({count} records).")

    return AnalyticsResults(
        patterns=patterns,
        insights=insights,
        ai=AiMetadata(provider="heuristic"),
    )


class FallbackComputation:
    """Runs the synchronous fallback function off the event loop."""

    def __init__(self, fn: FallbackFn = basic_insights):
        self._fn = fn

    async def compute(
        self,
        data: AnalyticsData,
        use_ai: bool = False,
        student: Optional[Student] = None,
    ) -> AnalyticsResults:
        """
        Run the fallback.

        Raises:
            FallbackError: if the function raises or returns an invalid shape
        """
        try:
            result = await asyncio.to_thread(self._fn, data, use_ai, student)
            if isinstance(result, AnalyticsResults):
                return result
            return AnalyticsResults.model_validate(result)
        except Exception as e:
            raise FallbackError(f"Fallback computation failed: {e}") from e

    async def compute_or_minimal(
        self,
        data: AnalyticsData,
        use_ai: bool = False,
        student: Optional[Student] = None,
    ) -> AnalyticsResults:
        """Run the fallback; degrade to the minimal result instead of raising."""
        try:
            return await self.compute(data, use_ai=use_ai, student=student)
        except FallbackError as e:
            logger.error(f"{e}; returning minimal results")
            return minimal_results()
