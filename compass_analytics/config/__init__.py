"""Configuration for the analytics core."""

from .settings import Settings, get_settings
from .analytics import (
    SCHEMA_VERSION,
    AnalyticsConfiguration,
    CacheSettings,
    ConfigSource,
    PrecomputationConfig,
    WorkerSettings,
)

__all__ = [
    "Settings",
    "get_settings",
    "SCHEMA_VERSION",
    "AnalyticsConfiguration",
    "CacheSettings",
    "ConfigSource",
    "PrecomputationConfig",
    "WorkerSettings",
]
