"""
Schedule Status Providers

Answer "is this device currently under automated time-based control?".
Automated schedules always take precedence over manual writes.
"""

from typing import Protocol

from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.cache.realtime import RealtimeCache

logger = get_service_logger("control.schedule")


class ScheduleStatusProvider(Protocol):
    async def is_schedule_active(self, device_id: str) -> bool: ...


class StaticScheduleStatus:
    """Schedule state set explicitly, e.g. by an upstream scheduler"""

    def __init__(self, active: set[str] | None = None):
        self._active: set[str] = set(active or ())

    def set_active(self, device_id: str, active: bool = True) -> None:
        if active:
            self._active.add(device_id)
        else:
            self._active.discard(device_id)

    async def is_schedule_active(self, device_id: str) -> bool:
        return device_id in self._active


class ReadingScheduleStatus:
    """
    Schedule state derived from the device's own status bits.

    Active when the cached snapshot has a reading whose name contains
    "control" and one whose name contains "schedule", and both are truthy.
    Missing data means manual mode.
    """

    def __init__(self, cache: RealtimeCache, max_age_s: float | None = None):
        self._cache = cache
        self._max_age_s = max_age_s

    async def is_schedule_active(self, device_id: str) -> bool:
        snapshot = self._cache.get(device_id, self._max_age_s)
        if snapshot is None:
            logger.debug(f"No realtime data for {device_id}, assuming manual mode")
            return False

        control = schedule = None
        for reading in snapshot.readings.values():
            lowered = reading.name.lower()
            if control is None and "control" in lowered:
                control = reading
            if schedule is None and "schedule" in lowered:
                schedule = reading

        if control is None or schedule is None:
            logger.debug(f"Control or schedule bit not found for {device_id}")
            return False

        return bool(control.value) and bool(schedule.value)
