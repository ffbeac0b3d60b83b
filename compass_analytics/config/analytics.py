"""
Analytics Configuration

Versioned runtime configuration for the analytics core, plus the source
that holds it and notifies subscribers on change.

Key insight: every cache key folds in `schema_version`, so bumping the
version invalidates all keys derived under the previous schema without
touching the cache itself.
"""

import copy
import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from compass_analytics.config.settings import Settings


logger = logging.getLogger(__name__)

SCHEMA_VERSION = "2.3.0"

# Watchdog bounds when the timeout is derived from the cache TTL
WATCHDOG_MIN_MS = 5_000
WATCHDOG_MAX_MS = 20_000


class CacheSettings(BaseModel):
    """Hook-level analytics cache settings."""
    ttl_ms: int = Field(default=10 * 60 * 1000, gt=0)
    max_size: int = Field(default=50, gt=0)
    invalidate_on_config_change: bool = True


class PrecomputationConfig(BaseModel):
    """Background precomputation behavior and device/user constraints."""

    # Master enable switch
    enabled: bool = True

    # Device behavior toggles
    enable_on_battery: bool = False
    enable_on_slow_network: bool = False

    # Queue management
    max_queue_size: int = Field(default=50, ge=0)
    batch_size: int = Field(default=5, gt=0)
    idle_timeout_ms: int = Field(default=5_000, ge=0)

    # Device constraints
    respect_battery_level: bool = True
    respect_cpu_usage: bool = True
    respect_network_conditions: bool = True
    max_cpu_percent: float = Field(default=80.0, gt=0, le=100)
    min_battery_percent: float = Field(default=20.0, ge=0, le=100)
    min_available_memory_mb: int = Field(default=2048, ge=0)

    # Performance limits
    task_stagger_delay_ms: int = Field(default=100, ge=0)

    # User preferences
    precompute_only_when_idle: bool = True


class WorkerSettings(BaseModel):
    """Worker lifecycle, circuit breaker and watchdog tuning."""

    # None derives the timeout from the cache TTL (clamped 5s..20s)
    watchdog_timeout_ms: Optional[int] = Field(default=None, gt=0)
    consecutive_timeouts_before_circuit_open: int = Field(default=2, gt=0)

    # Circuit breaker
    circuit_failure_threshold: int = Field(default=3, gt=0)
    circuit_window_seconds: float = Field(default=60.0, gt=0)
    circuit_cooldown_seconds: float = Field(default=15.0, ge=0)
    runtime_error_cooldown_seconds: float = Field(default=60.0, ge=0)


class AnalyticsConfiguration(BaseModel):
    """Runtime analytics configuration."""

    # Schema version to invalidate caches when structure changes
    schema_version: str = SCHEMA_VERSION
    cache: CacheSettings = Field(default_factory=CacheSettings)
    precomputation: PrecomputationConfig = Field(default_factory=PrecomputationConfig)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)

    def watchdog_timeout_ms(self) -> int:
        if self.worker.watchdog_timeout_ms is not None:
            return self.worker.watchdog_timeout_ms
        return min(WATCHDOG_MAX_MS, max(WATCHDOG_MIN_MS, self.cache.ttl_ms))

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnalyticsConfiguration":
        """Defaults with environment overrides applied."""
        cache = CacheSettings()
        if settings.ANALYTICS_CACHE_TTL_MS:
            cache.ttl_ms = settings.ANALYTICS_CACHE_TTL_MS
        if settings.ANALYTICS_CACHE_MAX_SIZE:
            cache.max_size = settings.ANALYTICS_CACHE_MAX_SIZE
        return cls(cache=cache)


def _deep_merge(base: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


ConfigListener = Callable[[AnalyticsConfiguration], None]


class ConfigSource:
    """
    Holds the live AnalyticsConfiguration and notifies subscribers.

    Updates are validated before they take effect; an invalid patch is
    rejected and the previous configuration stays live.
    """

    def __init__(self, config: Optional[AnalyticsConfiguration] = None):
        self._config = config or AnalyticsConfiguration()
        self._listeners: List[ConfigListener] = []

    def get_config(self) -> AnalyticsConfiguration:
        return self._config

    def update_config(self, patch: Dict[str, Any]) -> bool:
        """
        Apply a (nested) partial update and notify subscribers.

        Returns:
            True if the update was valid and applied
        """
        try:
            merged = _deep_merge(self._config.model_dump(), patch)
            new_config = AnalyticsConfiguration.model_validate(merged)
        except ValidationError as e:
            logger.warning(f"Rejected invalid analytics config update: {e}")
            return False

        self._config = new_config
        logger.info(f"Analytics config updated (schema {new_config.schema_version})")
        self._notify(new_config)
        return True

    def reset(self) -> None:
        """Restore defaults and notify subscribers."""
        self._config = AnalyticsConfiguration()
        self._notify(self._config)

    def subscribe(self, listener: ConfigListener) -> Callable[[], None]:
        """Register a listener; returns the matching unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, config: AnalyticsConfiguration) -> None:
        for listener in list(self._listeners):
            try:
                listener(config)
            except Exception as e:
                logger.error(f"Config listener {listener!r} failed: {e}")
