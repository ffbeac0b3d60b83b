"""
Configuration Management

Uses Pydantic Settings for environment-based configuration.
Loads from .env file automatically.

These are process-level switches. Tunable analytics behaviour (TTL, watchdog,
precomputation) lives in AnalyticsConfiguration and can change at runtime.
"""

from typing import Optional
from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Application Settings
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Worker switches (either one puts the worker in the disabled state)
    ANALYTICS_WORKER_DISABLED: bool = False
    ANALYTICS_POC_MODE: bool = False

    # Cache overrides (fall back to AnalyticsConfiguration defaults)
    ANALYTICS_CACHE_TTL_MS: Optional[int] = None
    ANALYTICS_CACHE_MAX_SIZE: Optional[int] = None

    # Alerts health publication
    ANALYTICS_HEALTH_INTERVAL_SECONDS: float = 30.0
    ANALYTICS_HEALTH_STALE_SECONDS: float = 120.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields in .env file
        case_sensitive = False  # Allow both UPPERCASE and lowercase

    @property
    def worker_disabled(self) -> bool:
        return self.ANALYTICS_WORKER_DISABLED or self.ANALYTICS_POC_MODE


@lru_cache
def get_settings() -> Settings:
    """Get or create cached settings instance."""
    return Settings()
