"""
Analytics Orchestrator

The request/response surface of the analytics core.

run_analysis flow:
1. Resolve subject and goals, derive the cache key
2. Cache hit honouring the AI preference -> return
3. Identical key already in flight -> wait for that request
4. Register the request, then compute through one of:
   - AI analysis (falls back on failure)
   - the background worker, guarded by a watchdog
   - the synchronous fallback when the worker is not ready
5. Unregister on every settlement path

Callers only ever see AnalyticsResults or AnalyticsError.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from compass_analytics.cache.events import CacheEvent, CacheEventBus
from compass_analytics.cache.invalidation import CacheInvalidator, InvalidationResult
from compass_analytics.cache.monitoring import AlertsHealthMonitor, CacheMonitor, HealthCheckResult
from compass_analytics.cache.store import AnalyticsCache, CacheStats
from compass_analytics.cache.tags import TAG_AI, build_cache_tags, create_cache_key
from compass_analytics.config.analytics import AnalyticsConfiguration, ConfigSource
from compass_analytics.config.settings import Settings, get_settings
from compass_analytics.errors import (
    AnalyticsError,
    FallbackError,
    WatchdogTimeoutError,
    WorkerUnavailableError,
)
from compass_analytics.models import AnalyticsData, AnalyticsResults, Goal, Student
from compass_analytics.precompute.constraints import DeviceConstraints
from compass_analytics.precompute.scheduler import (
    AsyncioIdleScheduler,
    DeviceGate,
    IdleScheduler,
    PrecomputationScheduler,
    PrecomputeStatus,
    ScheduleResult,
)
from compass_analytics.worker.engine import ComputeFn, executor_engine_factory
from compass_analytics.worker.fallback import FallbackComputation
from compass_analytics.worker.handlers import AlertSink, MessageHandler
from compass_analytics.worker.inflight import InFlightRegistry, InFlightRequest, PartialCallback
from compass_analytics.worker.lifecycle import WorkerLifecycleManager, WorkerState
from compass_analytics.worker.messages import InsightsComputePayload, InsightsComputeTask
from compass_analytics.worker.watchdog import RequestWatchdog


logger = logging.getLogger(__name__)

AiAnalysisFn = Callable[[AnalyticsData, Optional[Student]], Awaitable[Any]]
GoalLookup = Callable[[str], Iterable[Goal]]


@dataclass
class AnalysisOptions:
    """Per-call options for run_analysis."""
    use_ai: Optional[bool] = None
    prewarm: bool = False
    student: Optional[Student] = None
    on_partial: Optional[PartialCallback] = None


class AnalyticsOrchestrator:
    """
    Composes cache, worker lifecycle, watchdog, fallback and precomputation.

    The worker lifecycle manager is shared and injected; everything else is
    owned by the orchestrator unless passed in.
    """

    def __init__(
        self,
        lifecycle: WorkerLifecycleManager,
        config_source: Optional[ConfigSource] = None,
        bus: Optional[CacheEventBus] = None,
        cache: Optional[AnalyticsCache] = None,
        fallback: Optional[FallbackComputation] = None,
        ai_analysis: Optional[AiAnalysisFn] = None,
        goal_lookup: Optional[GoalLookup] = None,
        alert_sink: Optional[AlertSink] = None,
        constraints: Optional[DeviceGate] = None,
        idle_scheduler: Optional[IdleScheduler] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings or get_settings()
        self._config_source = config_source or ConfigSource(
            AnalyticsConfiguration.from_settings(self._settings)
        )
        self._config = self._config_source.get_config()
        self._bus = bus or CacheEventBus()
        self._lifecycle = lifecycle
        self._fallback = fallback or FallbackComputation()
        self._ai_analysis = ai_analysis
        self._goal_lookup = goal_lookup

        self._cache = cache or AnalyticsCache(
            ttl=timedelta(milliseconds=self._config.cache.ttl_ms),
            max_size=self._config.cache.max_size,
            version=self._config.schema_version,
            clock=clock,
        )
        self._invalidator = CacheInvalidator(self._cache)

        self._registry = InFlightRegistry()
        self._watchdog = RequestWatchdog()
        self._handler = MessageHandler(
            cache=self._cache,
            registry=self._registry,
            watchdog=self._watchdog,
            lifecycle=lifecycle,
            bus=self._bus,
            alert_sink=alert_sink,
            clock=clock,
        )
        self._remove_listener: Optional[Callable[[], None]] = lifecycle.add_message_listener(
            self._handler.handle
        )

        self._scheduler = PrecomputationScheduler(
            runner=self._prewarm,
            config_provider=lambda: self._config.precomputation,
            constraints=constraints or DeviceConstraints(),
            idle_scheduler=idle_scheduler or AsyncioIdleScheduler(is_busy=self._has_foreground_work),
        )
        self._health = AlertsHealthMonitor(
            bus=self._bus,
            last_alert_at=lambda: self._handler.last_alerts_received_at,
            interval_seconds=self._settings.ANALYTICS_HEALTH_INTERVAL_SECONDS,
            stale_seconds=self._settings.ANALYTICS_HEALTH_STALE_SECONDS,
            clock=clock,
        )
        self._monitor = CacheMonitor(
            cache=self._cache,
            worker_status=self._lifecycle.status,
            alerts_health=self._health.snapshot,
        )

        self._background: Set[asyncio.Task] = set()
        self._unsubscribers: List[Callable[[], None]] = []
        self._worker_retained = False
        self._started = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe to config and bus signals, start health, hold the worker."""
        if self._started:
            return
        self._started = True

        self._unsubscribers.append(self._config_source.subscribe(self._on_config_changed))
        self._invalidator.bind(self._bus)
        self._health.start()

        acquired = await self._lifecycle.retain()
        self._worker_retained = acquired.retained
        if not acquired.ready:
            logger.info(f"Analytics worker not ready at start ({acquired.state.value}), fallback active")
        logger.info("Analytics orchestrator started")

    async def close(self) -> None:
        """Release everything acquired in start() and settle pending requests."""
        while self._unsubscribers:
            self._unsubscribers.pop()()
        self._invalidator.unbind()
        await self._health.stop()
        self._scheduler.close()
        self._watchdog.clear_all()

        for request in self._registry:
            request.reject(AnalyticsError("Analytics orchestrator closed", request.cache_key))

        for task in list(self._background):
            task.cancel()
        self._background.clear()

        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        if self._worker_retained:
            self._lifecycle.release()
            self._worker_retained = False

        self._started = False
        logger.info("Analytics orchestrator closed")

    async def __aenter__(self) -> "AnalyticsOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # =========================================================================
    # Analysis
    # =========================================================================

    async def run_analysis(
        self,
        data: AnalyticsData,
        options: Optional[AnalysisOptions] = None,
    ) -> AnalyticsResults:
        """
        Analytics for a data set, from cache, worker, AI or fallback.

        Raises:
            AnalyticsError: on a worker-reported failure, or when every
                computation path failed
        """
        options = options or AnalysisOptions()
        try:
            return await self._run_analysis(data, options)
        except AnalyticsError:
            raise
        except Exception as e:
            logger.error(f"Unexpected analytics failure: {e}")
            raise AnalyticsError(f"Analytics failed: {e}") from e

    async def _run_analysis(self, data: AnalyticsData, options: AnalysisOptions) -> AnalyticsResults:
        config = self._config
        use_ai = bool(options.use_ai)

        subject_id = options.student.id if options.student else data.first_student_id()
        goals = self._lookup_goals(subject_id)
        if goals:
            data = data.with_goals(goals)

        cache_key = create_cache_key(data, goals, config, use_ai=use_ai)

        entry = self._cache.get(cache_key, prefer_ai=options.use_ai)
        if entry is not None:
            logger.debug(f"Analytics cache hit for {cache_key}")
            return entry.value

        pending = self._registry.for_key(cache_key)
        if pending is not None:
            logger.debug(f"Joining in-flight analytics request for {cache_key}")
            return await asyncio.shield(pending.future)

        request = InFlightRequest(
            request_id=uuid.uuid4().hex,
            cache_key=cache_key,
            future=asyncio.get_running_loop().create_future(),
            data=data,
            tags=build_cache_tags(data, goals, subject_id=subject_id, include_ai_tag=use_ai),
            use_ai=use_ai,
            prewarm=options.prewarm,
            student=options.student,
            on_partial=options.on_partial,
        )
        self._registry.add(request)
        try:
            return await self._execute(request, config)
        finally:
            self._registry.remove(request)
            self._watchdog.clear(request.request_id)
            if not request.future.done():
                # Owner cancelled; coalesced waiters must not hang
                request.reject(AnalyticsError("Analytics request cancelled", cache_key))
                request.future.exception()

    async def _execute(self, request: InFlightRequest, config: AnalyticsConfiguration) -> AnalyticsResults:
        if request.use_ai and self._ai_analysis is not None:
            return await self._run_ai(request)

        acquired = await self._lifecycle.retain()
        try:
            if not acquired.ready:
                log = logger.debug if request.prewarm else logger.info
                log(f"Analytics worker unavailable ({acquired.state.value}), using fallback")
                await self._settle_with_fallback(request, reason=acquired.error, worker_unavailable=True)
                return await asyncio.shield(request.future)

            task = InsightsComputeTask(
                request_id=request.request_id,
                cache_key=request.cache_key,
                payload=InsightsComputePayload(
                    inputs=request.data,
                    config=config.model_dump(),
                    prewarm=request.prewarm,
                    use_ai=request.use_ai,
                ),
                tags=sorted(request.tags),
                ttl_seconds=config.cache.ttl_ms // 1000,
            )
            if not self._lifecycle.dispatch(task):
                await self._settle_with_fallback(request, reason="dispatch failed", worker_unavailable=True)
                return await asyncio.shield(request.future)

            self._watchdog.start(
                request.request_id,
                config.watchdog_timeout_ms(),
                self._on_watchdog_expired,
            )
            return await asyncio.shield(request.future)
        finally:
            if acquired.retained:
                self._lifecycle.release()

    async def _run_ai(self, request: InFlightRequest) -> AnalyticsResults:
        try:
            result = await self._ai_analysis(request.data, request.student)
            if not isinstance(result, AnalyticsResults):
                result = AnalyticsResults.model_validate(result)
        except Exception as e:
            logger.warning(f"AI analysis failed for {request.cache_key}, using fallback: {e}")
            await self._settle_with_fallback(request, reason="ai failed")
            return await asyncio.shield(request.future)

        self._cache.set(request.cache_key, result, request.tags | {TAG_AI})
        request.resolve(result)
        return result

    async def _settle_with_fallback(
        self,
        request: InFlightRequest,
        reason: Optional[str] = None,
        worker_unavailable: bool = False,
    ) -> None:
        """Compute the fallback for a request and settle it. Never raises."""
        try:
            if request.prewarm:
                result = await self._fallback.compute_or_minimal(
                    request.data, use_ai=request.use_ai, student=request.student
                )
            else:
                result = await self._fallback.compute(
                    request.data, use_ai=request.use_ai, student=request.student
                )
        except FallbackError as e:
            e.cache_key = request.cache_key
            logger.error(f"Fallback failed for {request.cache_key} ({reason}): {e}")
            request.reject(self._fallback_failure(request, e, reason, worker_unavailable))
            return

        if request.resolve(result):
            self._cache.set(request.cache_key, result, request.tags)
            logger.debug(f"Analytics served by fallback for {request.cache_key} ({reason})")

    @staticmethod
    def _fallback_failure(
        request: InFlightRequest,
        error: FallbackError,
        reason: Optional[str],
        worker_unavailable: bool,
    ) -> AnalyticsError:
        """Error for a request whose fallback failed, chained to the fallback error."""
        if request.timeout_error is not None:
            failure: AnalyticsError = request.timeout_error
        elif worker_unavailable:
            failure = WorkerUnavailableError(
                f"Analytics worker unavailable ({reason}) and fallback failed", request.cache_key
            )
        else:
            return error
        failure.__cause__ = error
        return failure

    def _on_watchdog_expired(self, request_id: str) -> None:
        request = self._registry.get(request_id)
        if request is None or request.settled:
            return

        request.timeout_error = WatchdogTimeoutError(self._config.watchdog_timeout_ms(), request.cache_key)
        logger.warning(f"{request.timeout_error.message} for {request.cache_key}, switching to fallback")
        self._lifecycle.record_timeout()
        self._spawn(self._settle_with_fallback(request, reason="watchdog timeout"))

    # =========================================================================
    # Precomputation
    # =========================================================================

    def precompute_common_analytics(
        self,
        data_provider: Callable[[], Iterable[AnalyticsData]],
        student: Optional[Student] = None,
    ) -> ScheduleResult:
        """Queue data sets for idle-time prewarming."""
        if not self._config.precomputation.enabled:
            return ScheduleResult(scheduled=False, reason="disabled")
        try:
            candidates = list(data_provider())
        except Exception as e:
            logger.debug(f"Precompute data provider failed: {e}")
            return ScheduleResult(scheduled=False, reason="data provider failed")
        return self._scheduler.schedule(candidates, student)

    def start_precomputation(self) -> None:
        self._scheduler.resume()

    def stop_precomputation(self) -> None:
        self._scheduler.stop()

    async def _prewarm(self, data: AnalyticsData, student: Optional[Student]) -> AnalyticsResults:
        return await self.run_analysis(data, AnalysisOptions(prewarm=True, student=student))

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate_cache_for_subject(self, subject_id: str) -> InvalidationResult:
        return self._invalidator.invalidate_subject(subject_id)

    def clear_cache(self) -> InvalidationResult:
        return self._invalidator.clear_all()

    def _on_config_changed(self, config: AnalyticsConfiguration) -> None:
        previous, self._config = self._config, config

        self._cache.ttl = timedelta(milliseconds=config.cache.ttl_ms)
        self._cache.resize(config.cache.max_size)
        if config.schema_version != previous.schema_version:
            self._cache.set_version(config.schema_version)

        if config.cache.invalidate_on_config_change:
            self.clear_cache()

        if config.precomputation.enabled:
            self._scheduler.resume()
        else:
            self._scheduler.stop()

        self._bus.publish(CacheEvent.CONFIG_CHANGED, {"schema_version": config.schema_version})

    # =========================================================================
    # Observability
    # =========================================================================

    @property
    def config(self) -> AnalyticsConfiguration:
        return self._config

    @property
    def bus(self) -> CacheEventBus:
        return self._bus

    @property
    def cache(self) -> AnalyticsCache:
        return self._cache

    @property
    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    @property
    def cache_size(self) -> int:
        return self._cache.size

    @property
    def precompute_status(self) -> PrecomputeStatus:
        return self._scheduler.status()

    @property
    def precompute_enabled(self) -> bool:
        return self._scheduler.enabled

    @property
    def worker_state(self) -> WorkerState:
        return self._lifecycle.state

    @property
    def in_flight_count(self) -> int:
        return len(self._registry)

    def health_check(self) -> HealthCheckResult:
        return self._monitor.health_check()

    def alerts_health(self) -> Dict[str, Any]:
        return self._health.snapshot()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lookup_goals(self, subject_id: Optional[str]) -> List[Goal]:
        if not subject_id or self._goal_lookup is None:
            return []
        try:
            return list(self._goal_lookup(subject_id) or [])
        except Exception as e:
            logger.debug(f"Goal lookup failed for {subject_id}: {e}")
            return []

    def _has_foreground_work(self) -> bool:
        return any(not request.prewarm for request in self._registry)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def create_orchestrator(
    compute_fn: ComputeFn,
    settings: Optional[Settings] = None,
    **kwargs: Any,
) -> AnalyticsOrchestrator:
    """Wire an orchestrator around an executor-backed engine."""
    settings = settings or get_settings()
    config_source = kwargs.pop("config_source", None) or ConfigSource(
        AnalyticsConfiguration.from_settings(settings)
    )
    lifecycle = WorkerLifecycleManager(
        engine_factory=executor_engine_factory(compute_fn),
        settings=config_source.get_config().worker,
        disabled=settings.worker_disabled,
    )
    return AnalyticsOrchestrator(
        lifecycle=lifecycle,
        config_source=config_source,
        settings=settings,
        **kwargs,
    )
