"""
Precomputation Scheduler

Runs low-priority "prewarm" analytics while the service is idle, so the
results are already cached when somebody asks for them.

Flow per idle cycle:
1. Wait for an idle slot (injectable IdleScheduler)
2. Ask the device constraints whether precomputation is affordable
3. Dispatch up to `batch_size` queued candidates through run_analysis,
   staggered by `task_stagger_delay_ms`
4. Schedule another idle cycle while candidates remain

Precomputation failures are never fatal and only logged at debug level.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Protocol, Sequence, Set, Tuple

from compass_analytics.config.analytics import PrecomputationConfig
from compass_analytics.models import AnalyticsData, Student


logger = logging.getLogger(__name__)

PrewarmRunner = Callable[[AnalyticsData, Optional[Student]], Awaitable[Any]]


# ============================================================================
# IDLE SCHEDULING
# ============================================================================

class IdleHandle(Protocol):
    def cancel(self) -> None:
        ...


class IdleScheduler(Protocol):
    """Runs `fn` when the host is idle, or after `timeout_ms` at the latest."""

    def schedule_when_idle(self, fn: Callable[[], None], timeout_ms: int) -> IdleHandle:
        ...


class _PollHandle:
    def __init__(self):
        self.timer: Optional[asyncio.Handle] = None
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True
        if self.timer is not None:
            self.timer.cancel()


class AsyncioIdleScheduler:
    """
    Idle detection on the event loop.

    Polls `is_busy` every `poll_interval_ms`; runs the callback at the first
    idle poll or when the timeout elapses, whichever comes first.
    """

    def __init__(
        self,
        is_busy: Callable[[], bool] = lambda: False,
        poll_interval_ms: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._is_busy = is_busy
        self._poll_interval = poll_interval_ms / 1000
        self._clock = clock

    def schedule_when_idle(self, fn: Callable[[], None], timeout_ms: int) -> IdleHandle:
        loop = asyncio.get_running_loop()
        handle = _PollHandle()
        deadline = self._clock() + timeout_ms / 1000

        def poll() -> None:
            if handle.cancelled:
                return
            if not self._is_busy() or self._clock() >= deadline:
                fn()
                return
            handle.timer = loop.call_later(self._poll_interval, poll)

        handle.timer = loop.call_soon(poll)
        return handle


# ============================================================================
# SCHEDULER
# ============================================================================

@dataclass
class PrecomputeStatus:
    """Read-only snapshot of the scheduler."""
    enabled: bool
    queue_size: int
    is_processing: bool
    processed_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "queue_size": self.queue_size,
            "is_processing": self.is_processing,
            "processed_count": self.processed_count,
        }


@dataclass
class ScheduleResult:
    """Outcome of a schedule() call."""
    scheduled: bool
    queued: int = 0
    dropped: int = 0
    reason: Optional[str] = None


class DeviceGate(Protocol):
    async def can_precompute(self, config: Optional[PrecomputationConfig] = None) -> bool:
        ...


class PrecomputationScheduler:
    """Idle-time prewarm queue in front of the orchestrator's run_analysis."""

    def __init__(
        self,
        runner: PrewarmRunner,
        config_provider: Callable[[], PrecomputationConfig],
        constraints: DeviceGate,
        idle_scheduler: Optional[IdleScheduler] = None,
    ):
        self._runner = runner
        self._config_provider = config_provider
        self._constraints = constraints
        self._idle = idle_scheduler or AsyncioIdleScheduler()

        self._queue: Deque[Tuple[AnalyticsData, Optional[Student]]] = deque()
        self._idle_handle: Optional[IdleHandle] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._staggered: Set[asyncio.TimerHandle] = set()
        self._active: Set[asyncio.Task] = set()
        self._stopped = False
        self._processed_count = 0

    # =========================================================================
    # Control
    # =========================================================================

    def schedule(
        self,
        candidates: Sequence[AnalyticsData],
        student: Optional[Student] = None,
    ) -> ScheduleResult:
        """Queue candidates and request an idle cycle."""
        config = self._config_provider()
        if not config.enabled:
            return ScheduleResult(scheduled=False, reason="disabled")
        if self._stopped:
            return ScheduleResult(scheduled=False, reason="stopped")

        room = max(0, config.max_queue_size - len(self._queue))
        accepted = list(candidates[:room])
        dropped = len(candidates) - len(accepted)
        for data in accepted:
            self._queue.append((data, student))
        if dropped:
            logger.debug(f"Precompute queue full, dropped {dropped} candidates")

        if self._queue:
            self._request_idle_cycle(config)

        return ScheduleResult(
            scheduled=bool(accepted),
            queued=len(accepted),
            dropped=dropped,
            reason=None if accepted else "queue full",
        )

    def stop(self) -> None:
        """Stop scheduling new idle cycles. Dispatched work is not cancelled."""
        self._stopped = True
        self._cancel_idle()
        logger.info("Precomputation stopped")

    def resume(self) -> None:
        self._stopped = False
        config = self._config_provider()
        if self._queue and config.enabled:
            self._request_idle_cycle(config)
        logger.info("Precomputation resumed")

    def close(self) -> None:
        """Cancel pending idle and stagger timers and drop the queue."""
        self._stopped = True
        self._cancel_idle()
        if self._cycle_task is not None:
            self._cycle_task.cancel()
            self._cycle_task = None
        for timer in self._staggered:
            timer.cancel()
        self._staggered.clear()
        self._queue.clear()

    # =========================================================================
    # Status
    # =========================================================================

    @property
    def is_stopped(self) -> bool:
        return self._stopped

    @property
    def enabled(self) -> bool:
        return self._config_provider().enabled and not self._stopped

    def status(self) -> PrecomputeStatus:
        return PrecomputeStatus(
            enabled=self.enabled,
            queue_size=len(self._queue),
            is_processing=bool(self._active or self._staggered or self._cycle_task),
            processed_count=self._processed_count,
        )

    # =========================================================================
    # Cycle
    # =========================================================================

    def _request_idle_cycle(self, config: PrecomputationConfig) -> None:
        if self._idle_handle is not None or self._cycle_task is not None:
            return
        self._idle_handle = self._idle.schedule_when_idle(self._on_idle, config.idle_timeout_ms)

    def _cancel_idle(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _on_idle(self) -> None:
        self._idle_handle = None
        if self._stopped:
            return
        self._cycle_task = asyncio.get_running_loop().create_task(self._run_cycle())

    async def _run_cycle(self) -> None:
        config = self._config_provider()
        try:
            try:
                allowed = await self._constraints.can_precompute(config)
            except Exception as e:
                logger.debug(f"Device constraint check failed, proceeding anyway: {e}")
                allowed = True

            if not allowed:
                logger.debug(f"Device constraints deny precomputation, dropping {len(self._queue)} candidates")
                self._queue.clear()
                return

            if self._stopped:
                return

            loop = asyncio.get_running_loop()
            delay = config.task_stagger_delay_ms / 1000
            for index in range(min(config.batch_size, len(self._queue))):
                data, student = self._queue.popleft()
                self._schedule_dispatch(loop, index * delay, data, student)
        finally:
            self._cycle_task = None

        if self._queue and not self._stopped:
            self._request_idle_cycle(config)

    def _schedule_dispatch(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        data: AnalyticsData,
        student: Optional[Student],
    ) -> None:
        timer: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._staggered.discard(timer)
            self._dispatch(data, student)

        timer = loop.call_later(delay, fire)
        self._staggered.add(timer)

    def _dispatch(self, data: AnalyticsData, student: Optional[Student]) -> None:
        task = asyncio.get_running_loop().create_task(self._runner(data, student))
        self._active.add(task)
        task.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._active.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"Precomputation failed (non-fatal): {error}")
            return
        self._processed_count += 1
