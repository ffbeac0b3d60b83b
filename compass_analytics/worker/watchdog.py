"""
Request Watchdog

One timer per in-flight request. A `progress` heartbeat restarts the timer;
expiry hands the request id to the owner's callback, which decides how to
fail over (fallback computation, worker reset).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional


logger = logging.getLogger(__name__)

ExpiryCallback = Callable[[str], None]


@dataclass
class _Timer:
    handle: asyncio.TimerHandle
    timeout_ms: int
    on_expire: ExpiryCallback
    extensions: int = 0


class RequestWatchdog:
    """Per-request timeouts scheduled on the event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._timers: Dict[str, _Timer] = {}

    def start(self, request_id: str, timeout_ms: int, on_expire: ExpiryCallback) -> None:
        """Arm (or re-arm) the timer for a request."""
        self.clear(request_id)
        handle = self._get_loop().call_later(timeout_ms / 1000, self._expire, request_id)
        self._timers[request_id] = _Timer(handle=handle, timeout_ms=timeout_ms, on_expire=on_expire)

    def extend(self, request_id: str) -> bool:
        """Restart the timer with its original duration. No-op once cleared."""
        timer = self._timers.get(request_id)
        if timer is None:
            return False
        timer.handle.cancel()
        timer.handle = self._get_loop().call_later(
            timer.timeout_ms / 1000, self._expire, request_id
        )
        timer.extensions += 1
        return True

    def clear(self, request_id: str) -> bool:
        timer = self._timers.pop(request_id, None)
        if timer is None:
            return False
        timer.handle.cancel()
        return True

    def clear_all(self) -> int:
        count = len(self._timers)
        for timer in self._timers.values():
            timer.handle.cancel()
        self._timers.clear()
        return count

    def is_armed(self, request_id: str) -> bool:
        return request_id in self._timers

    @property
    def active_count(self) -> int:
        return len(self._timers)

    def _expire(self, request_id: str) -> None:
        timer = self._timers.pop(request_id, None)
        if timer is None:
            return
        logger.warning(
            f"Watchdog expired for request {request_id} after {timer.timeout_ms}ms "
            f"({timer.extensions} extensions)"
        )
        try:
            timer.on_expire(request_id)
        except Exception as e:
            logger.error(f"Watchdog expiry handler failed for {request_id}: {e}")

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop
