"""
Analytics Cache

In-memory result cache with tags, TTL and versioning, the event bus that
carries invalidation signals, and cache health monitoring.
"""

from .store import AnalyticsCache, CacheEntry, CacheStats
from .tags import (
    build_cache_tags,
    create_cache_key,
    extract_tags_from_data,
    subject_tag,
)
from .events import CacheEvent, CacheEventBus
from .invalidation import CacheInvalidator, InvalidationResult
from .monitoring import AlertsHealthMonitor, CacheMonitor, HealthCheckResult, HealthStatus

__all__ = [
    # Store
    "AnalyticsCache",
    "CacheEntry",
    "CacheStats",
    # Keys and tags
    "build_cache_tags",
    "create_cache_key",
    "extract_tags_from_data",
    "subject_tag",
    # Events
    "CacheEvent",
    "CacheEventBus",
    "CacheInvalidator",
    "InvalidationResult",
    # Monitoring
    "AlertsHealthMonitor",
    "CacheMonitor",
    "HealthCheckResult",
    "HealthStatus",
]
