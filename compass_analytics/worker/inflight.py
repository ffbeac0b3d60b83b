"""
In-flight Requests

Correlates a dispatched task with the caller's future and the cache key it
will populate. The registry is indexed both by request id and by cache key;
at most one request per key is registered at a time.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, Set

from compass_analytics.errors import WatchdogTimeoutError
from compass_analytics.models import AnalyticsData, AnalyticsResults, Student


PartialCallback = Callable[[Dict[str, Any]], None]


@dataclass
class InFlightRequest:
    """A pending analytics computation."""
    request_id: str
    cache_key: str
    future: asyncio.Future
    data: AnalyticsData
    tags: Set[str] = field(default_factory=set)
    use_ai: bool = False
    prewarm: bool = False
    student: Optional[Student] = None
    on_partial: Optional[PartialCallback] = None
    started_at: float = field(default_factory=time.monotonic)
    settled: bool = False
    # Set when the watchdog gave up on the engine
    timeout_error: Optional[WatchdogTimeoutError] = None

    def resolve(self, result: AnalyticsResults) -> bool:
        """Settle with a result. Returns False if already settled."""
        if self.settled or self.future.done():
            return False
        self.settled = True
        self.future.set_result(result)
        return True

    def reject(self, error: BaseException) -> bool:
        """Settle with an error. Returns False if already settled."""
        if self.settled or self.future.done():
            return False
        self.settled = True
        self.future.set_exception(error)
        return True


class InFlightRegistry:
    """Request-id and cache-key index over in-flight requests."""

    def __init__(self):
        self._by_id: Dict[str, InFlightRequest] = {}
        self._by_key: Dict[str, InFlightRequest] = {}

    def add(self, request: InFlightRequest) -> None:
        if request.cache_key in self._by_key:
            raise ValueError(f"Request already in flight for {request.cache_key}")
        self._by_id[request.request_id] = request
        self._by_key[request.cache_key] = request

    def remove(self, request: InFlightRequest) -> None:
        self._by_id.pop(request.request_id, None)
        if self._by_key.get(request.cache_key) is request:
            del self._by_key[request.cache_key]

    def get(self, request_id: Optional[str]) -> Optional[InFlightRequest]:
        return self._by_id.get(request_id) if request_id else None

    def for_key(self, cache_key: Optional[str]) -> Optional[InFlightRequest]:
        return self._by_key.get(cache_key) if cache_key else None

    def find(self, request_id: Optional[str], cache_key: Optional[str]) -> Optional[InFlightRequest]:
        """Correlate a message: request id first, then cache key."""
        return self.get(request_id) or self.for_key(cache_key)

    def __len__(self) -> int:
        return len(self._by_id)

    def __iter__(self) -> Iterator[InFlightRequest]:
        return iter(list(self._by_id.values()))
