"""
Polling Service

Per-device poll jobs. Each job is a ScheduledLoop whose tick reads all
parameters of its device and publishes the result to the event hub.

- Ticks never overlap; ticks falling due mid-read are skipped and counted
- Failures never stop a job; the next tick simply tries again
- Stopping a job cancels future ticks but not an in-flight read
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any

from fieldgate.common.exceptions import ConfigurationError
from fieldgate.common.logging_setup import LogContext, get_service_logger
from fieldgate.common.scheduler import ScheduledLoop
from fieldgate.services.device.health import HealthTracker
from fieldgate.services.device.registry import DeviceRegistry
from .events import EventHub, PollEvent, error_event_for

logger = get_service_logger("polling")

MIN_POLL_INTERVAL_MS = 100


@dataclass
class PollJob:
    """A running poll schedule for one device"""
    device_id: str
    interval_ms: int
    running: bool = True
    ticks: int = 0
    failed_ticks: int = 0
    last_tick_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    loop: ScheduledLoop | None = field(default=None, repr=False)

    @property
    def skipped_ticks(self) -> int:
        return self.loop.skipped_count if self.loop else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "interval_ms": self.interval_ms,
            "running": self.running,
            "ticks": self.ticks,
            "failed_ticks": self.failed_ticks,
            "skipped_ticks": self.skipped_ticks,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
        }


class PollingService:
    """
    Starts and stops poll jobs against devices in the registry.

    Usage:
        polling = PollingService(registry, hub)
        await polling.start("meter-1", 2000)
        ...
        await polling.stop("meter-1")
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        hub: EventHub,
        health: HealthTracker | None = None,
    ):
        self._registry = registry
        self._hub = hub
        self._health = health
        self._jobs: dict[str, PollJob] = {}

    async def start(self, device_id: str, interval_ms: int) -> PollJob:
        """
        Start polling a device, or change the interval of its running job.

        Raises:
            DeviceNotFoundError: device not registered
            ConfigurationError: interval below the minimum
        """
        if interval_ms < MIN_POLL_INTERVAL_MS:
            raise ConfigurationError(
                f"Poll interval must be >= {MIN_POLL_INTERVAL_MS}ms", field="intervalMs"
            )
        device = self._registry.require(device_id)

        job = self._jobs.get(device_id)
        if job is not None and job.loop is not None and job.loop.running:
            job.interval_ms = interval_ms
            job.loop.set_interval(interval_ms / 1000)
            logger.info(f"Poll interval for {device.name} changed to {interval_ms}ms")
            return job

        job = PollJob(device_id=device_id, interval_ms=interval_ms)
        job.loop = ScheduledLoop(
            interval_ms / 1000,
            lambda: self._tick(job),
            name=f"poll:{device_id}",
        )
        self._jobs[device_id] = job
        if self._health is not None:
            self._health.register(device.id, device.name)

        await job.loop.start()
        logger.info(
            f"Started polling {device.name} every {interval_ms}ms",
            extra={"device_id": device_id, "interval_ms": interval_ms},
        )
        return job

    async def stop(self, device_id: str, wait: bool = False) -> bool:
        """
        Stop polling a device. Idempotent.

        With ``wait`` the call returns only after an in-flight tick finishes.
        Returns True if a job was stopped.
        """
        job = self._jobs.pop(device_id, None)
        if job is None:
            return False

        job.running = False
        if job.loop is not None:
            job.loop.stop()
            if wait:
                await job.loop.wait_stopped()
        logger.info(f"Stopped polling {device_id}", extra={"device_id": device_id})
        return True

    async def stop_all(self, wait: bool = True) -> None:
        for device_id in list(self._jobs):
            await self.stop(device_id, wait=wait)

    def is_polling(self, device_id: str) -> bool:
        job = self._jobs.get(device_id)
        return job is not None and job.running

    def get_job(self, device_id: str) -> PollJob | None:
        return self._jobs.get(device_id)

    def status(self, device_id: str | None = None) -> dict[str, Any]:
        """Status of one job, or of all jobs"""
        if device_id is not None:
            job = self._jobs.get(device_id)
            return job.to_dict() if job else {"device_id": device_id, "running": False}
        return {
            "active_jobs": len(self._jobs),
            "jobs": {job_id: job.to_dict() for job_id, job in self._jobs.items()},
        }

    async def _tick(self, job: PollJob) -> None:
        device = self._registry.get(job.device_id)
        if device is None:
            # A job never outlives its device
            logger.warning(f"Device {job.device_id} no longer registered, stopping poll job")
            if self._jobs.get(job.device_id) is job:
                await self.stop(job.device_id)
            elif job.loop is not None:
                job.loop.stop()
            return

        with LogContext(device_id=device.id, operation="poll"):
            readings = await device.read_all_parameters()
        now = datetime.now(timezone.utc)
        job.ticks += 1
        job.last_tick_at = now

        event = PollEvent(
            device_id=device.id,
            device_name=device.name,
            readings=list(readings.values()),
            timestamp=now,
            source="poll",
        )
        self._hub.publish(event)

        if event.failed:
            error = error_event_for(event)
            job.failed_ticks += 1
            job.last_error = error.error
            self._hub.publish(error)
            if self._health is not None:
                self._health.record_failure(device.id, error.error, device.transport.is_connected)
            logger.warning(
                f"Poll of {device.name} failed: {error.error}",
                extra={"device_id": device.id},
            )
        elif readings:
            job.last_success_at = now
            job.last_error = None
            if self._health is not None:
                self._health.record_success(device.id, device.transport.is_connected)
