"""
Device Health Tracker

Tracks per-device online/offline status from scan outcomes.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any

from fieldgate.common.logging_setup import get_service_logger

logger = get_service_logger("device.health")


@dataclass
class DeviceHealth:
    """Current health of a device"""
    device_id: str
    device_name: str
    connected: bool = False
    is_online: bool = False
    last_successful_read: datetime | None = None
    last_error: str | None = None
    consecutive_failures: int = 0
    total_scans: int = 0
    failed_scans: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "connected": self.connected,
            "is_online": self.is_online,
            "last_successful_read": (
                self.last_successful_read.isoformat() if self.last_successful_read else None
            ),
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "total_scans": self.total_scans,
            "failed_scans": self.failed_scans,
        }


class HealthTracker:
    """
    Device health bookkeeping.

    A scan succeeds when at least one parameter was read. A device goes
    offline after OFFLINE_THRESHOLD consecutive failed scans and comes
    back online on the next successful one.
    """

    # Number of failures before marking device offline
    OFFLINE_THRESHOLD = 3

    def __init__(self):
        self._health: dict[str, DeviceHealth] = {}

    def register(self, device_id: str, device_name: str) -> DeviceHealth:
        health = self._health.get(device_id)
        if health is None:
            health = DeviceHealth(device_id=device_id, device_name=device_name)
            self._health[device_id] = health
        else:
            health.device_name = device_name
        return health

    def remove(self, device_id: str) -> None:
        self._health.pop(device_id, None)

    def get(self, device_id: str) -> DeviceHealth | None:
        return self._health.get(device_id)

    def all(self) -> list[DeviceHealth]:
        return list(self._health.values())

    def record_success(self, device_id: str, connected: bool = True) -> DeviceHealth | None:
        health = self._health.get(device_id)
        if health is None:
            return None

        was_online = health.is_online
        health.total_scans += 1
        health.connected = connected
        health.is_online = True
        health.last_successful_read = datetime.now(timezone.utc)
        health.consecutive_failures = 0
        health.last_error = None

        if not was_online:
            logger.info(f"Device {health.device_name} is ONLINE")
        return health

    def record_failure(
        self,
        device_id: str,
        error: str | None,
        connected: bool = False,
    ) -> DeviceHealth | None:
        health = self._health.get(device_id)
        if health is None:
            return None

        health.total_scans += 1
        health.failed_scans += 1
        health.connected = connected
        health.consecutive_failures += 1
        health.last_error = error

        if health.consecutive_failures >= self.OFFLINE_THRESHOLD and health.is_online:
            health.is_online = False
            logger.warning(
                f"Device {health.device_name} is OFFLINE after "
                f"{health.consecutive_failures} failures: {error}"
            )
        return health

    def counts(self) -> dict[str, int]:
        online = sum(1 for h in self._health.values() if h.is_online)
        return {
            "total_devices": len(self._health),
            "online_devices": online,
            "offline_devices": len(self._health) - online,
        }
