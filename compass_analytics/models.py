"""
Compass Analytics - Data Models

Shared models for analytics inputs and results. Input records stay loosely
typed (plain dicts) because the tracking layer owns their schema; only the
fields the cache needs (student_id, timestamp) are read here.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Student(BaseModel):
    """Subject of an analysis."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = "Student"


class Goal(BaseModel):
    """Goal attached to a student; only id and student_id feed the cache."""
    model_config = ConfigDict(extra="allow")

    id: str
    student_id: Optional[str] = None


class AnalyticsData(BaseModel):
    """Input data set for one analytics request."""
    model_config = ConfigDict(extra="allow")

    entries: List[Dict[str, Any]] = Field(default_factory=list)
    emotions: List[Dict[str, Any]] = Field(default_factory=list)
    sensory_inputs: List[Dict[str, Any]] = Field(default_factory=list)
    goals: Optional[List[Goal]] = None

    def first_student_id(self) -> Optional[str]:
        """First student_id found in entries, then emotions, then sensory inputs."""
        for records in (self.entries, self.emotions, self.sensory_inputs):
            if records:
                student_id = records[0].get("student_id")
                if student_id:
                    return str(student_id)
        return None

    def with_goals(self, goals: Optional[List[Goal]]) -> "AnalyticsData":
        return self.model_copy(update={"goals": goals})


class AiMetadata(BaseModel):
    """Provenance of a result produced by an AI provider."""
    model_config = ConfigDict(extra="allow")

    provider: Optional[str] = None
    model: Optional[str] = None


class AnalyticsResults(BaseModel):
    """
    Result contract shared by the worker, AI and fallback paths.

    Callers cannot tell which path produced a result; all of them return
    this shape.
    """
    model_config = ConfigDict(extra="allow")

    patterns: List[Any] = Field(default_factory=list)
    correlations: List[Any] = Field(default_factory=list)
    environmental_correlations: List[Any] = Field(default_factory=list)
    predictive_insights: List[Any] = Field(default_factory=list)
    anomalies: List[Any] = Field(default_factory=list)
    insights: List[str] = Field(default_factory=list)
    suggested_interventions: List[Any] = Field(default_factory=list)
    ai: Optional[AiMetadata] = None

    @property
    def is_ai(self) -> bool:
        """True when produced by a non-heuristic AI provider."""
        provider = self.ai.provider if self.ai else None
        return isinstance(provider, str) and provider.lower() != "heuristic"


def minimal_results() -> AnalyticsResults:
    """Placeholder result used when every computation path failed."""
    return AnalyticsResults(insights=["Analytics temporarily unavailable."])
