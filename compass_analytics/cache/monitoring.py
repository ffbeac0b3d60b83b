"""
Cache Monitoring

Health checks for the analytics cache and worker, plus the periodic
alerts health signal.

The alerts signal publishes `{healthy, ms_since_last_alert}` on the event
bus every interval. Alerts are considered stale (unhealthy) when none has
arrived within the stale threshold, or none has ever arrived.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from compass_analytics.cache.events import CacheEvent, CacheEventBus
from compass_analytics.cache.store import AnalyticsCache


logger = logging.getLogger(__name__)

# Hit rate below this is reported once enough lookups have happened
MIN_HIT_RATE = 0.3
MIN_LOOKUPS_FOR_HIT_RATE = 100


class HealthStatus(Enum):
    """Health check status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthCheckResult:
    """Result of a health check."""
    status: HealthStatus
    checks: Dict[str, bool]
    issues: List[Dict[str, Any]]
    cache: Dict[str, Any] = field(default_factory=dict)
    worker: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "checks": self.checks,
            "issues": self.issues,
            "cache": self.cache,
            "worker": self.worker,
            "timestamp": self.timestamp.isoformat(),
        }


class CacheMonitor:
    """
    Monitors cache and worker health.

    Checks:
    - Worker state (circuit open means every request is served by fallback)
    - Cache hit rate
    - Alerts freshness
    """

    def __init__(
        self,
        cache: AnalyticsCache,
        worker_status: Callable[[], Dict[str, Any]],
        alerts_health: Optional[Callable[[], Dict[str, Any]]] = None,
        min_hit_rate: float = MIN_HIT_RATE,
    ):
        self._cache = cache
        self._worker_status = worker_status
        self._alerts_health = alerts_health
        self._min_hit_rate = min_hit_rate

    def health_check(self) -> HealthCheckResult:
        checks: Dict[str, bool] = {}
        issues: List[Dict[str, Any]] = []
        worker: Dict[str, Any] = {}

        try:
            worker = self._worker_status()
            state = worker.get("state")

            # Check 1: Worker availability
            checks["worker"] = state not in ("circuit-open",)
            if state == "circuit-open":
                issues.append({
                    "type": "worker",
                    "severity": "critical",
                    "message": "Worker circuit breaker is open (serving fallback results)",
                    "retry_in_seconds": worker.get("circuit_cooldown_remaining_s"),
                })
            elif state == "disabled":
                issues.append({
                    "type": "worker",
                    "severity": "info",
                    "message": "Worker disabled by configuration (serving fallback results)",
                })

            # Check 2: Hit rate
            stats = self._cache.stats()
            lookups = stats.hits + stats.misses
            checks["hit_rate"] = lookups < MIN_LOOKUPS_FOR_HIT_RATE or stats.hit_rate >= self._min_hit_rate
            if not checks["hit_rate"]:
                issues.append({
                    "type": "hit_rate",
                    "severity": "warning",
                    "message": f"Low cache hit rate: {stats.hit_rate * 100:.1f}%",
                    "threshold": self._min_hit_rate * 100,
                })

            # Check 3: Alerts freshness
            if self._alerts_health is not None:
                alerts = self._alerts_health()
                checks["alerts"] = bool(alerts.get("healthy"))
                if not checks["alerts"]:
                    issues.append({
                        "type": "alerts",
                        "severity": "warning",
                        "message": "No recent alerts received",
                        "ms_since_last_alert": alerts.get("ms_since_last_alert"),
                    })

            if not checks["worker"]:
                status = HealthStatus.UNHEALTHY
            elif not all(checks.values()):
                status = HealthStatus.DEGRADED
            else:
                status = HealthStatus.HEALTHY

            cache_stats = stats.to_dict()

        except Exception as e:
            logger.error(f"Health check error: {e}")
            status = HealthStatus.UNHEALTHY
            issues.append({"type": "error", "severity": "critical", "message": str(e)})
            cache_stats = {}

        return HealthCheckResult(
            status=status,
            checks=checks,
            issues=issues,
            cache=cache_stats,
            worker=worker,
        )


class AlertsHealthMonitor:
    """Publishes ALERTS_HEALTH on the bus at a fixed interval."""

    def __init__(
        self,
        bus: CacheEventBus,
        last_alert_at: Callable[[], Optional[float]],
        interval_seconds: float = 30.0,
        stale_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._bus = bus
        self._last_alert_at = last_alert_at
        self.interval_seconds = interval_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def snapshot(self) -> Dict[str, Any]:
        last = self._last_alert_at()
        if last is None:
            return {"healthy": False, "ms_since_last_alert": None}
        ms_since = max(0, int((self._clock() - last) * 1000))
        return {
            "healthy": ms_since < self.stale_seconds * 1000,
            "ms_since_last_alert": ms_since,
        }

    def publish(self) -> Dict[str, Any]:
        detail = self.snapshot()
        self._bus.publish(CacheEvent.ALERTS_HEALTH, detail)
        return detail

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug(f"Alerts health monitor started ({self.interval_seconds}s interval)")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.publish()
            except Exception as e:
                logger.debug(f"Failed to publish alerts health: {e}")
