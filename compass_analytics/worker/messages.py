"""
Worker Message Protocol

Request and response messages exchanged with the computation engine.

Responses form a discriminated union on `type`:
- progress: lightweight heartbeat, extends the request watchdog
- partial: interim result during a long computation
- complete: final result for a request
- error: recoverable failure for a request
- alerts: alert events discovered during computation

Responses are correlated to a pending request by `request_id`, or by
`cache_key` when the engine only echoes the key.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from compass_analytics.errors import InvalidMessageError
from compass_analytics.models import AnalyticsData, AnalyticsResults


# ============================================================================
# REQUEST (orchestrator -> engine)
# ============================================================================

class InsightsComputePayload(BaseModel):
    inputs: AnalyticsData
    config: Dict[str, Any] = Field(default_factory=dict)
    prewarm: bool = False
    use_ai: bool = False


class InsightsComputeTask(BaseModel):
    """Primary analytics task posted to the engine."""
    type: Literal["Insights/Compute"] = "Insights/Compute"
    request_id: str
    cache_key: str
    payload: InsightsComputePayload
    tags: List[str] = Field(default_factory=list)
    ttl_seconds: Optional[int] = None


# ============================================================================
# RESPONSES (engine -> orchestrator)
# ============================================================================

class ProgressInfo(BaseModel):
    stage: str = ""
    percent: float = 0.0


class _Response(BaseModel):
    model_config = ConfigDict(extra="allow")

    request_id: Optional[str] = None
    cache_key: Optional[str] = None


class ProgressMessage(_Response):
    type: Literal["progress"] = "progress"
    progress: Optional[ProgressInfo] = None


class PartialMessage(_Response):
    type: Literal["partial"] = "partial"
    payload: Optional[Dict[str, Any]] = None
    charts_updated: List[str] = Field(default_factory=list)
    progress: Optional[ProgressInfo] = None


class CompleteMessage(_Response):
    type: Literal["complete"] = "complete"
    payload: AnalyticsResults
    prewarm: bool = False


class ErrorMessage(_Response):
    type: Literal["error"] = "error"
    error: str = "Analytics worker error"


class AlertsPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    alerts: List[Dict[str, Any]] = Field(default_factory=list)
    student_id: Optional[str] = None
    prewarm: bool = False

    def target_student_id(self) -> Optional[str]:
        if self.student_id:
            return self.student_id
        if self.alerts:
            first = self.alerts[0].get("student_id")
            return str(first) if first else None
        return None


class AlertsMessage(_Response):
    type: Literal["alerts"] = "alerts"
    payload: AlertsPayload


WorkerMessage = Annotated[
    Union[ProgressMessage, PartialMessage, CompleteMessage, ErrorMessage, AlertsMessage],
    Field(discriminator="type"),
]

MESSAGE_TYPES = (ProgressMessage, PartialMessage, CompleteMessage, ErrorMessage, AlertsMessage)

_adapter = TypeAdapter(WorkerMessage)


def parse_worker_message(raw: Any) -> BaseModel:
    """
    Validate a raw engine message.

    Accepts an already-built message model or a plain dict.

    Raises:
        InvalidMessageError: if it is not a recognised response
    """
    if isinstance(raw, MESSAGE_TYPES):
        return raw
    if isinstance(raw, BaseModel):
        raw = raw.model_dump()
    try:
        return _adapter.validate_python(raw)
    except ValidationError as e:
        kind = raw.get("type") if isinstance(raw, dict) else type(raw).__name__
        raise InvalidMessageError(f"malformed worker message (type={kind!r})") from e
