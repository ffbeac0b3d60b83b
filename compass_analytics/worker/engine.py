"""
Computation Engine

Boundary of the background computation engine. The orchestrator only ever
talks to an engine through `post()` / `terminate()` and receives protocol
messages through the callback it supplied at creation.

ExecutorEngine is the in-process implementation: it runs an injected
compute function on a thread pool so the event loop stays responsive, and
reports back with progress / complete / alerts / error messages.
"""

import asyncio
import logging
from concurrent.futures import BrokenExecutor, Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union

from compass_analytics.models import AnalyticsData, AnalyticsResults
from compass_analytics.worker.messages import (
    AlertsMessage,
    AlertsPayload,
    CompleteMessage,
    ErrorMessage,
    InsightsComputeTask,
    ProgressInfo,
    ProgressMessage,
)


logger = logging.getLogger(__name__)

MessageCallback = Callable[[Any], None]
RuntimeErrorCallback = Callable[[BaseException], None]


class ComputationEngine(Protocol):
    """Background computation handle."""

    def post(self, task: InsightsComputeTask) -> None:
        ...

    def terminate(self) -> None:
        ...


EngineFactory = Callable[
    [MessageCallback, RuntimeErrorCallback],
    Union[ComputationEngine, Awaitable[ComputationEngine]],
]


@dataclass
class ComputeOutput:
    """Compute function output when alerts are produced alongside results."""
    results: AnalyticsResults
    alerts: List[Dict[str, Any]] = field(default_factory=list)
    student_id: Optional[str] = None


ComputeFn = Callable[[AnalyticsData, Dict[str, Any], bool], Union[AnalyticsResults, ComputeOutput]]


class ExecutorEngine:
    """Runs analytics tasks on an executor and emits protocol messages."""

    def __init__(
        self,
        compute_fn: ComputeFn,
        on_message: MessageCallback,
        on_runtime_error: Optional[RuntimeErrorCallback] = None,
        executor: Optional[Executor] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._compute_fn = compute_fn
        self._on_message = on_message
        self._on_runtime_error = on_runtime_error
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="analytics-engine"
        )
        self._loop = loop or asyncio.get_running_loop()
        self._tasks: Set[asyncio.Task] = set()
        self._terminated = False

    def start(self) -> "ExecutorEngine":
        logger.info("Analytics engine started")
        return self

    def post(self, task: InsightsComputeTask) -> None:
        if self._terminated:
            raise RuntimeError("Engine has been terminated")
        job = self._loop.create_task(self._run(task))
        self._tasks.add(job)
        job.add_done_callback(self._tasks.discard)

    def terminate(self) -> None:
        if self._terminated:
            return
        self._terminated = True
        for job in list(self._tasks):
            job.cancel()
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("Analytics engine terminated")

    @property
    def is_terminated(self) -> bool:
        return self._terminated

    async def _run(self, task: InsightsComputeTask) -> None:
        correlation = {"request_id": task.request_id, "cache_key": task.cache_key}
        payload = task.payload

        self._emit(ProgressMessage(progress=ProgressInfo(stage="started"), **correlation))
        try:
            output = await self._loop.run_in_executor(
                self._executor,
                self._compute_fn,
                payload.inputs,
                payload.config,
                payload.use_ai,
            )
        except asyncio.CancelledError:
            raise
        except BrokenExecutor as e:
            logger.error(f"Analytics engine executor broken: {e}")
            if self._on_runtime_error:
                self._on_runtime_error(e)
            return
        except Exception as e:
            logger.warning(f"Analytics computation failed for {task.cache_key}: {e}")
            self._emit(ErrorMessage(error=str(e) or type(e).__name__, **correlation))
            return

        if isinstance(output, ComputeOutput):
            results = output.results
            if output.alerts:
                self._emit(AlertsMessage(
                    payload=AlertsPayload(
                        alerts=output.alerts,
                        student_id=output.student_id,
                        prewarm=payload.prewarm,
                    ),
                    **correlation,
                ))
        else:
            results = output

        self._emit(CompleteMessage(payload=results, prewarm=payload.prewarm, **correlation))

    def _emit(self, message: Any) -> None:
        if self._terminated:
            return
        self._on_message(message)


def executor_engine_factory(
    compute_fn: ComputeFn,
    executor: Optional[Executor] = None,
) -> EngineFactory:
    """Build an engine factory for the lifecycle manager."""

    async def factory(
        on_message: MessageCallback,
        on_runtime_error: RuntimeErrorCallback,
    ) -> ComputationEngine:
        engine = ExecutorEngine(
            compute_fn,
            on_message,
            on_runtime_error=on_runtime_error,
            executor=executor,
        )
        return engine.start()

    return factory
