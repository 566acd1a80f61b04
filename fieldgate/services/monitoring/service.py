"""
Event-Driven Monitoring Service

One shared scan loop over every enabled device. Each scan compares the
new readings to the previous ones and publishes only what changed, plus
a full snapshot at a fixed interval so the history stays complete.

Speed presets:
    very-fast  500ms
    fast       1000ms
    normal     2000ms
    slow       5000ms
    very-slow  10000ms
Any other value >= 100ms is reported as "custom".
"""

import asyncio
import time
from typing import Any

from fieldgate.common.exceptions import ConfigurationError, DeviceNotFoundError
from fieldgate.common.logging_setup import LogContext, get_service_logger
from fieldgate.common.scheduler import ScheduledLoop
from fieldgate.services.device.device import Device, Reading
from fieldgate.services.device.health import DeviceHealth, HealthTracker
from fieldgate.services.device.registry import DeviceRegistry
from fieldgate.services.polling.events import EventHub, PollEvent, error_event_for
from fieldgate.storage.config_store import ConfigStore

logger = get_service_logger("monitoring")


SPEED_PRESETS = {
    "very-fast": 500,
    "fast": 1000,
    "normal": 2000,
    "slow": 5000,
    "very-slow": 10000,
}

DEFAULT_INTERVAL_MS = 10000
MIN_INTERVAL_MS = 100
CHANGE_THRESHOLD = 0.01
DEFAULT_SNAPSHOT_INTERVAL_S = 300.0


def speed_name(interval_ms: int) -> str:
    for name, preset in SPEED_PRESETS.items():
        if preset == interval_ms:
            return name
    return "custom"


def value_changed(previous: Any, current: Any, threshold: float = CHANGE_THRESHOLD) -> bool:
    """Numeric values change beyond ``threshold``; anything else on inequality"""
    if previous is None or current is None:
        return previous is not current
    if isinstance(previous, (int, float)) and isinstance(current, (int, float)):
        return abs(current - previous) > threshold
    return previous != current


class MonitoringService:
    """
    Shared-loop monitoring across all enabled devices.

    Usage:
        monitoring = MonitoringService(registry, store, hub, health)
        await monitoring.start()
        monitoring.set_monitoring_speed("fast")
        await monitoring.trigger_device_sync("meter-1")
        await monitoring.stop()
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        store: ConfigStore,
        hub: EventHub,
        health: HealthTracker | None = None,
        interval_ms: int = DEFAULT_INTERVAL_MS,
        snapshot_interval_s: float = DEFAULT_SNAPSHOT_INTERVAL_S,
    ):
        self._registry = registry
        self._store = store
        self._hub = hub
        self.health = health or HealthTracker()

        self._interval_ms = self._validate_interval(interval_ms)
        self.snapshot_interval_s = snapshot_interval_s

        self._loop: ScheduledLoop | None = None
        self._running = False
        self._syncing: set[str] = set()
        # Registered from the store; only these are torn down on re-scan
        self._from_store: set[str] = set()
        self._last_values: dict[str, dict[str, Any]] = {}
        self._last_snapshot: dict[str, float] = {}

        # Stats
        self._scan_cycles = 0
        self._device_scans = 0
        self._skipped_scans = 0
        self._changes_detected = 0
        self._events_emitted = 0
        self._snapshots_emitted = 0
        self._manual_syncs = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval_ms(self) -> int:
        return self._interval_ms

    # -- lifecycle ------------------------------------------------------------

    async def start(self, interval_ms: int | None = None) -> dict[str, Any]:
        """
        Register every enabled device from the store and start the shared loop.

        Calling start while running only applies a new interval.
        """
        if interval_ms is not None:
            self.set_monitoring_interval(interval_ms)

        if self._running:
            return self.get_service_stats()

        added, _ = await self._load_devices()
        self._loop = ScheduledLoop(
            self._interval_ms / 1000,
            self._scan_all,
            name="monitoring",
        )
        self._running = True
        await self._loop.start()

        logger.info(
            f"Monitoring started: {len(self._registry)} devices, "
            f"{added} new, interval {self._interval_ms}ms ({self.speed})"
        )
        return self.get_service_stats()

    async def stop(self) -> None:
        """Stop the shared loop; an in-flight scan finishes first"""
        if not self._running:
            return
        self._running = False
        if self._loop is not None:
            self._loop.stop()
            await self._loop.wait_stopped()
            self._loop = None
        logger.info("Monitoring stopped")

    async def force_device_initialization(self) -> dict[str, Any]:
        """
        Re-scan the store: register newly configured devices and tear down
        store devices that were removed or disabled. Devices still listed
        are left untouched.
        """
        before = len(self._registry)
        added, removed = await self._load_devices()
        logger.info(f"Device re-scan registered {added} new, removed {removed} device(s)")
        return {
            "new_devices": added,
            "removed_devices": removed,
            "total_devices": len(self._registry),
            "previous_devices": before,
        }

    async def _load_devices(self) -> tuple[int, int]:
        configs = await self._store.list_devices(enabled_only=True)
        added = 0
        for config in configs:
            if config.id not in self._registry:
                await self._registry.create_device(config)
                added += 1
            self._from_store.add(config.id)
            self.health.register(config.id, config.name)

        gone = self._from_store - {config.id for config in configs}
        for device_id in sorted(gone):
            await self._remove_device(device_id)
        return added, len(gone)

    async def _remove_device(self, device_id: str) -> None:
        """Tear down a store device that is no longer enabled"""
        self._from_store.discard(device_id)
        await self._registry.unregister(device_id)
        self.health.remove(device_id)
        self._hub.remove_channel(device_id)
        self._last_values.pop(device_id, None)
        self._last_snapshot.pop(device_id, None)
        logger.info(
            f"Device {device_id} removed or disabled in the store, stopped monitoring it",
            extra={"device_id": device_id},
        )

    # -- speed ----------------------------------------------------------------

    @property
    def speed(self) -> str:
        return speed_name(self._interval_ms)

    def set_monitoring_speed(self, speed: str) -> dict[str, Any]:
        """Apply a named preset"""
        if speed not in SPEED_PRESETS:
            raise ConfigurationError(
                f"Unknown monitoring speed {speed!r}; expected one of "
                f"{', '.join(SPEED_PRESETS)}",
                field="speed",
            )
        return self.set_monitoring_interval(SPEED_PRESETS[speed])

    def set_monitoring_interval(self, interval_ms: int) -> dict[str, Any]:
        """Apply an arbitrary interval (>= 100ms)"""
        self._interval_ms = self._validate_interval(interval_ms)
        if self._loop is not None:
            self._loop.set_interval(self._interval_ms / 1000)
        logger.info(f"Monitoring interval set to {self._interval_ms}ms ({self.speed})")
        return self.get_monitoring_speed()

    def get_monitoring_speed(self) -> dict[str, Any]:
        return {"speed": self.speed, "interval": self._interval_ms}

    @staticmethod
    def _validate_interval(interval_ms: Any) -> int:
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, (int, float)):
            raise ConfigurationError(
                f"Monitoring interval must be a number, got {interval_ms!r}", field="interval"
            )
        if interval_ms < MIN_INTERVAL_MS:
            raise ConfigurationError(
                f"Monitoring interval must be >= {MIN_INTERVAL_MS}ms", field="interval"
            )
        return int(interval_ms)

    # -- scanning -------------------------------------------------------------

    async def _scan_all(self) -> None:
        devices = [d for d in self._registry.devices() if d.enabled]
        self._scan_cycles += 1
        if devices:
            await asyncio.gather(*(self._scan_skipping_sync(d) for d in devices))

    async def _scan_device(
        self,
        device: Device,
        force_full: bool = False,
        source: str = "monitor",
    ) -> PollEvent | None:
        with LogContext(device_id=device.id, operation=source):
            readings = await device.read_all_parameters()
        self._device_scans += 1
        now = time.monotonic()

        event = PollEvent(
            device_id=device.id,
            device_name=device.name,
            readings=list(readings.values()),
            source=source,
        )

        self.health.register(device.id, device.name)
        if event.failed:
            error = error_event_for(event)
            self.health.record_failure(device.id, error.error, device.transport.is_connected)
            self._hub.publish(error)
            logger.warning(
                f"Scan of {device.name} failed: {error.error}",
                extra={"device_id": device.id},
            )
        elif readings:
            self.health.record_success(device.id, device.transport.is_connected)

        changed = self._detect_changes(device.id, event.readings)
        snapshot_due = now - self._last_snapshot.get(device.id, float("-inf")) >= self.snapshot_interval_s

        if force_full or snapshot_due:
            self._last_snapshot[device.id] = now
            self._snapshots_emitted += 1
            self._publish(event)
            return event

        if changed:
            partial = PollEvent(
                device_id=device.id,
                device_name=device.name,
                readings=changed,
                timestamp=event.timestamp,
                source=source,
                full_snapshot=False,
            )
            self._publish(partial)
            return partial
        return None

    def _detect_changes(self, device_id: str, readings: list[Reading]) -> list[Reading]:
        previous = self._last_values.setdefault(device_id, {})
        changed = []
        for reading in readings:
            if not reading.ok:
                continue
            if reading.name not in previous or value_changed(previous[reading.name], reading.value):
                changed.append(reading)
                previous[reading.name] = reading.value
        self._changes_detected += len(changed)
        return changed

    def _publish(self, event: PollEvent) -> None:
        self._hub.publish(event)
        self._events_emitted += 1

    async def _scan_skipping_sync(self, device: Device) -> None:
        if self._registry.get(device.id) is not device:
            return
        if device.id in self._syncing:
            self._skipped_scans += 1
            return
        await self._scan_device(device)

    # -- manual triggers ------------------------------------------------------

    async def trigger_device_sync(self, device_id: str) -> dict[str, Any]:
        """
        Poll one device now, outside the shared schedule.

        The shared loop skips this device while the sync is in flight.
        """
        device = self._registry.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)

        self._syncing.add(device_id)
        self._manual_syncs += 1
        try:
            event = await self._scan_device(device, force_full=True, source="manual")
        finally:
            self._syncing.discard(device_id)

        health = self.health.get(device_id)
        return {
            "device_id": device_id,
            "device_name": device.name,
            "readings": event.to_dict()["readings"] if event else [],
            "online": health.is_online if health else False,
        }

    # -- reporting ------------------------------------------------------------

    def get_device_health(self, device_id: str) -> DeviceHealth | None:
        return self.health.get(device_id)

    def get_service_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            **self.get_monitoring_speed(),
            **self.health.counts(),
            "scan_cycles": self._scan_cycles,
            "device_scans": self._device_scans,
            "skipped_scans": self._skipped_scans,
            "changes_detected": self._changes_detected,
            "events_emitted": self._events_emitted,
            "snapshots_emitted": self._snapshots_emitted,
            "manual_syncs": self._manual_syncs,
            "scheduler": self._loop.get_stats() if self._loop else None,
        }
