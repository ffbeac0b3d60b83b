"""
Analytics Errors

Callers only ever see AnalyticsError (or a subclass). The subclasses record
which internal path failed, for logging and tests, but callers never need to
distinguish them.
"""

from typing import Optional


class AnalyticsError(Exception):
    """Normalized error raised by the orchestrator's public methods."""

    def __init__(self, message: str, cache_key: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.cache_key = cache_key


class ComputationError(AnalyticsError):
    """The computation engine reported a recoverable failure."""


class WatchdogTimeoutError(AnalyticsError):
    """No answer from the computation engine before the watchdog deadline."""

    def __init__(self, timeout_ms: int, cache_key: Optional[str] = None):
        super().__init__(f"Worker did not respond within {timeout_ms}ms", cache_key)
        self.timeout_ms = timeout_ms


class WorkerUnavailableError(AnalyticsError):
    """No usable worker handle, and the fallback failed as well."""


class FallbackError(AnalyticsError):
    """The synchronous fallback computation also failed."""


class InvalidMessageError(ValueError):
    """A message from the computation engine could not be parsed."""
