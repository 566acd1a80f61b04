"""
Realtime Cache

Last-known decoded readings per device, with a freshness TTL.
Fed from the event hub; consulted before issuing new reads.
"""

import time
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any

from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.device.device import Reading
from fieldgate.services.polling.events import Event, PollEvent

logger = get_service_logger("cache")

DEFAULT_TTL_S = 60.0


@dataclass
class DeviceSnapshot:
    """Latest readings of one device, keyed by parameter name"""
    device_id: str
    device_name: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    readings: dict[str, Reading] = field(default_factory=dict)
    updated_at: float = field(default_factory=time.monotonic)

    @property
    def age_s(self) -> float:
        return time.monotonic() - self.updated_at

    def value(self, name: str) -> Any:
        reading = self.readings.get(name)
        return reading.value if reading else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "deviceName": self.device_name,
            "timestamp": self.timestamp.isoformat(),
            "readings": [r.to_dict() for r in self.readings.values()],
        }


class RealtimeCache:
    """
    In-memory realtime snapshot store.

    Usage:
        cache = RealtimeCache(ttl_s=60)
        hub.subscribe(cache.handle_event)
        snapshot = cache.get("meter-1", max_age_s=5)
    """

    def __init__(self, ttl_s: float = DEFAULT_TTL_S):
        self.ttl_s = ttl_s
        self._snapshots: dict[str, DeviceSnapshot] = {}
        self._hits = 0
        self._misses = 0

    def get(self, device_id: str, max_age_s: float | None = None) -> DeviceSnapshot | None:
        """Snapshot no older than ``max_age_s`` (default: the TTL), else None"""
        snapshot = self._snapshots.get(device_id)
        limit = self.ttl_s if max_age_s is None else max_age_s
        if snapshot is None or snapshot.age_s > limit:
            self._misses += 1
            return None
        self._hits += 1
        return snapshot

    def put(self, event: PollEvent) -> DeviceSnapshot:
        """
        Merge a poll event into the device snapshot.

        A failed reading does not overwrite a previously good value, and
        the snapshot only becomes fresher when some reading succeeded.
        """
        snapshot = self._snapshots.get(event.device_id)
        if snapshot is None:
            snapshot = DeviceSnapshot(
                device_id=event.device_id,
                device_name=event.device_name,
                timestamp=event.timestamp,
                updated_at=float("-inf"),
            )
            self._snapshots[event.device_id] = snapshot

        for reading in event.readings:
            previous = snapshot.readings.get(reading.name)
            if reading.ok or previous is None or not previous.ok:
                snapshot.readings[reading.name] = reading

        snapshot.device_name = event.device_name
        if any(reading.ok for reading in event.readings):
            snapshot.timestamp = event.timestamp
            snapshot.updated_at = time.monotonic()
        return snapshot

    def update_value(
        self,
        device_id: str,
        name: str,
        value: Any,
        unit: str | None = None,
        address: int | None = None,
    ) -> None:
        """Record a written value without waiting for the next poll"""
        snapshot = self._snapshots.get(device_id)
        if snapshot is None:
            return
        previous = snapshot.readings.get(name)
        snapshot.readings[name] = Reading(
            parameter_id=previous.parameter_id if previous else name,
            name=name,
            address=address if address is not None else (previous.address if previous else 0),
            value=value,
            unit=unit if unit is not None else (previous.unit if previous else ""),
        )
        logger.debug(f"Cache updated {device_id}.{name} = {value}")

    def invalidate(self, device_id: str) -> None:
        self._snapshots.pop(device_id, None)

    def clear(self) -> None:
        self._snapshots.clear()

    def handle_event(self, event: Event) -> None:
        """Event hub sink"""
        if isinstance(event, PollEvent):
            self.put(event)

    def get_stats(self) -> dict[str, Any]:
        return {
            "devices": len(self._snapshots),
            "ttl_s": self.ttl_s,
            "hits": self._hits,
            "misses": self._misses,
        }
