"""
Device Constraints

Decides whether the host can afford background precomputation right now.

Readings come from psutil:
- Battery level and power source (sensors_battery, absent on most servers)
- Available memory (virtual_memory)
- CPU core count and current utilisation

Probe failures never block precomputation: if a reading cannot be taken the
check passes optimistically.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import psutil

from compass_analytics.config.analytics import PrecomputationConfig


logger = logging.getLogger(__name__)


@dataclass
class DeviceSnapshot:
    """Point-in-time resource readings.

    Attributes:
        battery_percent: Battery charge, None when the host has no battery
        power_plugged: True on mains power, None when unknown
        available_memory_mb: Memory available to new work
        cpu_count: Logical cores, None when unknown
        cpu_percent: System-wide CPU utilisation since the previous reading
    """

    battery_percent: Optional[float]
    power_plugged: Optional[bool]
    available_memory_mb: float
    cpu_count: Optional[int]
    cpu_percent: float


def probe_device() -> DeviceSnapshot:
    """Read current resource usage via psutil."""
    battery = None
    sensors_battery = getattr(psutil, "sensors_battery", None)
    if sensors_battery is not None:
        battery = sensors_battery()

    memory = psutil.virtual_memory()
    return DeviceSnapshot(
        battery_percent=battery.percent if battery else None,
        power_plugged=battery.power_plugged if battery else None,
        available_memory_mb=memory.available / (1024 * 1024),
        cpu_count=psutil.cpu_count(logical=True),
        # interval=None compares against the previous call and never blocks
        cpu_percent=psutil.cpu_percent(interval=None),
    )


class DeviceConstraints:
    """Precomputation gate over device resource readings."""

    def __init__(self, probe: Callable[[], DeviceSnapshot] = probe_device):
        self._probe = probe

    async def can_precompute(self, config: Optional[PrecomputationConfig] = None) -> bool:
        if config is None:
            return True
        if not config.enabled:
            return False

        try:
            snapshot = await asyncio.to_thread(self._probe)
        except Exception as e:
            logger.debug(f"Device probe failed, allowing precomputation: {e}")
            return True

        return self.evaluate(snapshot, config)

    @staticmethod
    def evaluate(snapshot: DeviceSnapshot, config: PrecomputationConfig) -> bool:
        """Apply the configured limits to one snapshot."""
        if config.respect_battery_level and snapshot.battery_percent is not None:
            if snapshot.battery_percent < config.min_battery_percent:
                logger.debug(f"Precomputation skipped: battery at {snapshot.battery_percent:.0f}%")
                return False
            if snapshot.power_plugged is False and not config.enable_on_battery:
                logger.debug("Precomputation skipped: running on battery")
                return False

        if snapshot.available_memory_mb < config.min_available_memory_mb:
            logger.debug(
                f"Precomputation skipped: {snapshot.available_memory_mb:.0f}MB available "
                f"(< {config.min_available_memory_mb}MB)"
            )
            return False

        if snapshot.cpu_count is not None and snapshot.cpu_count <= 1:
            logger.debug("Precomputation skipped: single-core host")
            return False

        if config.respect_cpu_usage and snapshot.cpu_percent > config.max_cpu_percent:
            logger.debug(f"Precomputation skipped: CPU at {snapshot.cpu_percent:.0f}%")
            return False

        return True
