"""Idle-time precomputation of analytics results."""

from .constraints import DeviceConstraints, DeviceSnapshot, probe_device
from .scheduler import (
    AsyncioIdleScheduler,
    IdleScheduler,
    PrecomputationScheduler,
    PrecomputeStatus,
    ScheduleResult,
)

__all__ = [
    "DeviceConstraints",
    "DeviceSnapshot",
    "probe_device",
    "AsyncioIdleScheduler",
    "IdleScheduler",
    "PrecomputationScheduler",
    "PrecomputeStatus",
    "ScheduleResult",
]
