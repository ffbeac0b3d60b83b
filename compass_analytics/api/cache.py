"""
Cache Management API

Provides endpoints for cache monitoring and manual operations.

Endpoints:
- Health check for monitoring/alerting
- Statistics for dashboard insights
- Manual invalidation (per subject or everything)
- Precomputation status and control
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from compass_analytics import __version__
from compass_analytics.cache.invalidation import InvalidationResult
from compass_analytics.config.settings import Settings, get_settings
from compass_analytics.logging_config import configure_logging
from compass_analytics.orchestration.orchestrator import AnalyticsOrchestrator, create_orchestrator
from compass_analytics.precompute.scheduler import PrecomputeStatus
from compass_analytics.worker.engine import ComputeFn
from compass_analytics.worker.fallback import basic_insights


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cache", tags=["Cache Management"])


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class CacheHealthResponse(BaseModel):
    """Cache health check response."""
    status: str = Field(..., description="healthy, degraded or unhealthy")
    worker_state: str = Field(..., description="Analytics worker state")
    cached_entries: int = Field(..., description="Number of cached entries")
    checks: Dict[str, bool] = Field(default_factory=dict)
    issues: List[Dict[str, Any]] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class CacheStatsResponse(BaseModel):
    """Cache statistics response."""
    hits: int
    misses: int
    sets: int
    evictions: int
    invalidations: int
    size: int
    hit_rate_percent: float
    in_flight: int


class InvalidationResponse(BaseModel):
    """Cache invalidation response."""
    success: bool
    keys_invalidated: int
    duration_ms: float
    subject_id: Optional[str] = None
    errors: List[str] = []


class PrecomputeStatusResponse(BaseModel):
    """Precomputation status response."""
    enabled: bool
    queue_size: int
    is_processing: bool
    processed_count: int


class AlertsHealthResponse(BaseModel):
    """Alerts pipeline freshness."""
    healthy: bool
    ms_since_last_alert: Optional[int] = None


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_orchestrator(request: Request) -> AnalyticsOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Analytics orchestrator not configured")
    return orchestrator


def _invalidation_response(result: InvalidationResult) -> InvalidationResponse:
    return InvalidationResponse(
        success=result.success,
        keys_invalidated=result.keys_invalidated,
        duration_ms=result.duration_ms,
        subject_id=result.subject_id,
        errors=result.errors,
    )


def _precompute_response(status: PrecomputeStatus) -> PrecomputeStatusResponse:
    return PrecomputeStatusResponse(**status.to_dict())


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/health", response_model=CacheHealthResponse)
def cache_health_check(orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator)):
    """
    Check analytics cache and worker health.

    Use this endpoint for monitoring and alerting systems.
    """
    health = orchestrator.health_check()

    return CacheHealthResponse(
        status=health.status.value,
        worker_state=orchestrator.worker_state.value,
        cached_entries=orchestrator.cache_size,
        checks=health.checks,
        issues=health.issues,
        timestamp=health.timestamp,
    )


@router.get("/stats", response_model=CacheStatsResponse)
def get_cache_stats(orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator)):
    """
    Get current cache statistics.

    Note: Stats are reset on application restart.
    """
    stats = orchestrator.cache_stats.to_dict()
    return CacheStatsResponse(**stats, in_flight=orchestrator.in_flight_count)


@router.post("/invalidate/subject/{subject_id}", response_model=InvalidationResponse)
def invalidate_subject_cache(
    subject_id: str,
    orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator),
):
    """
    Invalidate all cached analytics for one subject (student).

    Use this after manual data corrections for that subject.
    """
    return _invalidation_response(orchestrator.invalidate_cache_for_subject(subject_id))


@router.post("/invalidate/all", response_model=InvalidationResponse)
def invalidate_all_cache(orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator)):
    """
    Invalidate ALL cached analytics.

    CAUTION: Requests are recomputed until the cache repopulates.
    """
    result = orchestrator.clear_cache()
    if not result.success:
        logger.error(f"Failed to invalidate all cache: {result.errors}")
        raise HTTPException(status_code=500, detail="; ".join(result.errors))
    return _invalidation_response(result)


@router.get("/precompute/status", response_model=PrecomputeStatusResponse)
def get_precompute_status(orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator)):
    return _precompute_response(orchestrator.precompute_status)


@router.post("/precompute/start", response_model=PrecomputeStatusResponse)
def start_precompute(orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator)):
    """Resume idle-time precomputation."""
    orchestrator.start_precomputation()
    return _precompute_response(orchestrator.precompute_status)


@router.post("/precompute/stop", response_model=PrecomputeStatusResponse)
def stop_precompute(orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator)):
    """Stop scheduling precomputation. Requests already dispatched still finish."""
    orchestrator.stop_precomputation()
    return _precompute_response(orchestrator.precompute_status)


@router.get("/alerts/health", response_model=AlertsHealthResponse)
def get_alerts_health(orchestrator: AnalyticsOrchestrator = Depends(get_orchestrator)):
    return AlertsHealthResponse(**orchestrator.alerts_health())


# =============================================================================
# APP
# =============================================================================

def _default_compute(data, config, use_ai):
    return basic_insights(data, use_ai)


def create_app(
    orchestrator: Optional[AnalyticsOrchestrator] = None,
    compute_fn: Optional[ComputeFn] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the cache management app around an orchestrator."""
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Compass Analytics",
        description="Analytics computation orchestration and cache management",
        version=__version__,
    )
    app.state.orchestrator = orchestrator or create_orchestrator(
        compute_fn or _default_compute,
        settings=settings,
    )
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event():
        """Start the orchestrator (config/bus subscriptions, worker)."""
        logger.info("Starting analytics orchestrator...")
        await app.state.orchestrator.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.orchestrator.close()

    return app
