"""
Worker Lifecycle Manager

Owns the single shared computation engine handle.

- Reference counted: the handle is created lazily on first retain() and torn
  down when the count returns to zero
- Circuit breaker: repeated initialization failures within a sliding window
  stop further attempts until a cooldown elapses
- Pending queue: tasks dispatched while the handle is initializing are
  posted once it becomes ready
- Watchdog expiries tear the handle down; consecutive expiries open the
  circuit

Callers never mutate state directly; every transition goes through the
methods below. Acquisition failures are reported as "not ready" results,
never raised.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from compass_analytics.config.analytics import WorkerSettings
from compass_analytics.worker.engine import ComputationEngine, EngineFactory
from compass_analytics.worker.messages import InsightsComputeTask


logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    """Worker handle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CIRCUIT_OPEN = "circuit-open"
    DISABLED = "disabled"


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

@dataclass
class CircuitBreakerState:
    """Circuit breaker state tracking."""
    failures: List[float] = field(default_factory=list)
    last_failure: float = 0.0
    is_open: bool = False
    opened_at: float = 0.0
    cooldown: float = 0.0


class CircuitBreaker:
    """
    Circuit breaker for engine initialization.

    Opens after `threshold` failures inside `window_seconds`, then allows a
    new attempt once the cooldown has elapsed.
    """

    def __init__(
        self,
        threshold: int = 3,
        window_seconds: float = 60.0,
        cooldown_seconds: float = 15.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.state = CircuitBreakerState()
        self._clock = clock

    def is_available(self) -> bool:
        """Check if circuit allows an initialization attempt."""
        if not self.state.is_open:
            return True

        if self._clock() - self.state.opened_at >= self.state.cooldown:
            # Cooldown elapsed, allow the next attempt
            self.state.is_open = False
            self.state.failures.clear()
            logger.info("Worker circuit breaker closed, allowing initialization")
            return True

        return False

    def record_success(self) -> None:
        self.state.failures.clear()
        self.state.is_open = False

    def record_failure(self) -> bool:
        """
        Record a failed initialization.

        Returns:
            True if this failure opened the circuit
        """
        now = self._clock()
        self.state.last_failure = now
        self.state.failures = [
            ts for ts in self.state.failures if now - ts < self.window_seconds
        ]
        self.state.failures.append(now)

        if len(self.state.failures) >= self.threshold:
            self.trip(self.cooldown_seconds)
            logger.warning(
                f"Worker circuit breaker opened after {len(self.state.failures)} failures. "
                f"Will retry in {self.cooldown_seconds} seconds."
            )
            return True
        return False

    def trip(self, cooldown: float) -> None:
        """Open the circuit for an explicit cooldown."""
        self.state.is_open = True
        self.state.opened_at = self._clock()
        self.state.cooldown = cooldown

    def remaining_cooldown(self) -> float:
        if not self.state.is_open:
            return 0.0
        return max(0.0, self.state.cooldown - (self._clock() - self.state.opened_at))


# ============================================================================
# LIFECYCLE MANAGER
# ============================================================================

@dataclass
class AcquireResult:
    """Outcome of retain() / ensure_initialized()."""
    ready: bool
    state: WorkerState
    handle: Optional[ComputationEngine] = None
    error: Optional[str] = None
    # True when the call took a reference the caller must release
    retained: bool = False


MessageListener = Callable[[Any], None]


class WorkerLifecycleManager:
    """
    Reference-counted owner of the computation engine handle.

    Constructed once per process and passed to every consumer.
    """

    def __init__(
        self,
        engine_factory: EngineFactory,
        settings: Optional[WorkerSettings] = None,
        disabled: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or WorkerSettings()
        self._engine_factory = engine_factory
        self._settings = settings
        self._clock = clock
        self._breaker = CircuitBreaker(
            threshold=settings.circuit_failure_threshold,
            window_seconds=settings.circuit_window_seconds,
            cooldown_seconds=settings.circuit_cooldown_seconds,
            clock=clock,
        )

        self._state = WorkerState.DISABLED if disabled else WorkerState.UNINITIALIZED
        self._handle: Optional[ComputationEngine] = None
        self._ref_count = 0
        self._init_task: Optional[asyncio.Task] = None
        self._pending: List[InsightsComputeTask] = []
        self._listeners: List[MessageListener] = []
        self._consecutive_timeouts = 0
        self._last_message_at: Optional[float] = None

        if disabled:
            logger.info("Analytics worker disabled by configuration")

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> WorkerState:
        if self._state == WorkerState.CIRCUIT_OPEN and self._breaker.is_available():
            self._state = WorkerState.UNINITIALIZED
        return self._state

    @property
    def ref_count(self) -> int:
        return self._ref_count

    @property
    def handle(self) -> Optional[ComputationEngine]:
        return self._handle

    @property
    def is_ready(self) -> bool:
        return self.state == WorkerState.READY and self._handle is not None

    @property
    def consecutive_timeouts(self) -> int:
        return self._consecutive_timeouts

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def status(self) -> Dict[str, Any]:
        """Snapshot for health reporting."""
        return {
            "state": self.state.value,
            "ref_count": self._ref_count,
            "pending_tasks": len(self._pending),
            "consecutive_timeouts": self._consecutive_timeouts,
            "circuit_cooldown_remaining_s": round(self._breaker.remaining_cooldown(), 1),
            "last_message_at": self._last_message_at,
        }

    # =========================================================================
    # Acquisition
    # =========================================================================

    async def retain(self) -> AcquireResult:
        """Take a reference and make sure the handle is initialized."""
        if self._state == WorkerState.DISABLED:
            return AcquireResult(ready=False, state=WorkerState.DISABLED, error="worker disabled")

        self._ref_count += 1
        return replace(await self.ensure_initialized(), retained=True)

    def release(self) -> None:
        """Drop a reference; the last release tears the handle down."""
        if self._ref_count == 0:
            logger.debug("Worker release() with zero references ignored")
            return

        self._ref_count -= 1
        if self._ref_count == 0:
            self._teardown("last reference released")
            if self._state == WorkerState.READY:
                self._state = WorkerState.UNINITIALIZED

    async def ensure_initialized(self) -> AcquireResult:
        """Initialize the handle if needed, sharing one attempt across callers."""
        state = self.state
        if state == WorkerState.READY and self._handle is not None:
            return AcquireResult(ready=True, state=state, handle=self._handle)
        if state in (WorkerState.DISABLED, WorkerState.CIRCUIT_OPEN):
            return AcquireResult(ready=False, state=state, error=f"worker {state.value}")

        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        return await asyncio.shield(self._init_task)

    async def _initialize(self) -> AcquireResult:
        self._state = WorkerState.INITIALIZING
        logger.info("Initializing analytics worker")

        try:
            try:
                handle = self._engine_factory(self._on_message, self.report_runtime_error)
                if inspect.isawaitable(handle):
                    handle = await handle
            except Exception as e:
                opened = self._breaker.record_failure()
                self._state = WorkerState.CIRCUIT_OPEN if opened else WorkerState.UNINITIALIZED
                self._drop_pending("initialization failed")
                logger.error(f"Analytics worker initialization failed: {e}")
                return AcquireResult(ready=False, state=self._state, error=str(e))

            if self._state != WorkerState.INITIALIZING or self._ref_count == 0:
                # Released or disabled while initializing
                self._terminate_handle(handle)
                if self._state == WorkerState.INITIALIZING:
                    self._state = WorkerState.UNINITIALIZED
                self._drop_pending("released during initialization")
                return AcquireResult(ready=False, state=self._state, error="released during initialization")

            self._handle = handle
            self._breaker.record_success()
            self._state = WorkerState.READY
            logger.info("Analytics worker ready")
            self._flush_pending()
            return AcquireResult(ready=True, state=self._state, handle=handle)
        finally:
            self._init_task = None

    # =========================================================================
    # Dispatch
    # =========================================================================

    def dispatch(self, task: InsightsComputeTask) -> bool:
        """
        Post a task to the engine.

        Returns:
            True if posted or queued behind initialization, False if there
            is no handle to deliver it to
        """
        if self._state == WorkerState.INITIALIZING:
            self._pending.append(task)
            logger.debug(f"Queued task {task.request_id} until worker is ready")
            return True

        if self._state != WorkerState.READY or self._handle is None:
            return False

        try:
            self._handle.post(task)
            return True
        except Exception as e:
            logger.error(f"Failed to post task {task.request_id}: {e}")
            self.reset("post failed")
            return False

    def _flush_pending(self) -> None:
        pending, self._pending = self._pending, []
        for task in pending:
            self.dispatch(task)
        if pending:
            logger.debug(f"Flushed {len(pending)} queued tasks to worker")

    def _drop_pending(self, reason: str) -> None:
        if self._pending:
            logger.warning(f"Dropping {len(self._pending)} queued tasks: {reason}")
            self._pending.clear()

    # =========================================================================
    # Engine messages
    # =========================================================================

    def add_message_listener(self, listener: MessageListener) -> Callable[[], None]:
        """Route engine messages to `listener`; returns the remover."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _on_message(self, message: Any) -> None:
        self._last_message_at = self._clock()
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.error(f"Worker message listener failed: {e}")

    # =========================================================================
    # Failure handling
    # =========================================================================

    def record_timeout(self) -> bool:
        """
        Tear down the unresponsive handle and count the expiry.

        References are kept, so the next acquisition re-initializes. Reaching
        `consecutive_timeouts_before_circuit_open` expiries without a
        completion in between also opens the circuit.

        Returns:
            True if this expiry opened the circuit
        """
        if self._state == WorkerState.DISABLED:
            return False

        self._consecutive_timeouts += 1
        self._teardown("watchdog timeout")
        if self._state in (WorkerState.READY, WorkerState.INITIALIZING):
            self._state = WorkerState.UNINITIALIZED

        limit = self._settings.consecutive_timeouts_before_circuit_open
        if self._consecutive_timeouts >= limit:
            logger.warning(
                f"Analytics worker unresponsive ({self._consecutive_timeouts} consecutive timeouts), "
                f"opening circuit for {self._settings.circuit_cooldown_seconds}s"
            )
            self._consecutive_timeouts = 0
            self._breaker.trip(self._settings.circuit_cooldown_seconds)
            self._state = WorkerState.CIRCUIT_OPEN
            return True
        return False

    def record_completion(self) -> None:
        self._consecutive_timeouts = 0

    def reset(self, reason: str = "reset") -> None:
        """Tear the handle down but keep references; next acquisition re-initializes."""
        self._teardown(reason)
        self._consecutive_timeouts = 0
        if self._state in (WorkerState.READY, WorkerState.INITIALIZING):
            self._state = WorkerState.UNINITIALIZED

    def report_runtime_error(self, error: BaseException) -> None:
        """The engine crashed; tear down and hold off for the runtime cooldown."""
        if self._state == WorkerState.DISABLED:
            return
        logger.error(f"Analytics worker runtime error: {error}")
        self._teardown("runtime error")
        self._consecutive_timeouts = 0
        self._breaker.trip(self._settings.runtime_error_cooldown_seconds)
        self._state = WorkerState.CIRCUIT_OPEN

    def disable(self) -> None:
        """Enter the terminal disabled state."""
        self._teardown("disabled")
        self._drop_pending("worker disabled")
        self._state = WorkerState.DISABLED
        logger.info("Analytics worker disabled")

    # =========================================================================
    # Internals
    # =========================================================================

    def _teardown(self, reason: str) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            logger.info(f"Tearing down analytics worker: {reason}")
            self._terminate_handle(handle)

    @staticmethod
    def _terminate_handle(handle: ComputationEngine) -> None:
        try:
            handle.terminate()
        except Exception as e:
            logger.warning(f"Error terminating analytics worker: {e}")
