"""Background computation engine, its lifecycle and message protocol."""

from .engine import ComputationEngine, ComputeOutput, ExecutorEngine, executor_engine_factory
from .fallback import FallbackComputation, basic_insights
from .handlers import MessageHandler
from .inflight import InFlightRegistry, InFlightRequest
from .lifecycle import AcquireResult, CircuitBreaker, WorkerLifecycleManager, WorkerState
from .messages import (
    AlertsMessage,
    CompleteMessage,
    ErrorMessage,
    InsightsComputePayload,
    InsightsComputeTask,
    PartialMessage,
    ProgressMessage,
    parse_worker_message,
)
from .watchdog import RequestWatchdog

__all__ = [
    "ComputationEngine",
    "ComputeOutput",
    "ExecutorEngine",
    "executor_engine_factory",
    "FallbackComputation",
    "basic_insights",
    "MessageHandler",
    "InFlightRegistry",
    "InFlightRequest",
    "AcquireResult",
    "CircuitBreaker",
    "WorkerLifecycleManager",
    "WorkerState",
    "AlertsMessage",
    "CompleteMessage",
    "ErrorMessage",
    "InsightsComputePayload",
    "InsightsComputeTask",
    "PartialMessage",
    "ProgressMessage",
    "parse_worker_message",
    "RequestWatchdog",
]
