"""
Gateway Service

Composition root: wires the registry, event hub, polling, monitoring,
control and cache together, exposes the control surface and serves
/health, /status and /readings over HTTP.

Every control-surface method returns a dict with ``success``; failures
carry ``error: {kind, message}`` and never raise.
"""

import asyncio
import json
import signal
from datetime import datetime, timezone
from typing import Any, Awaitable

from aiohttp import web

from fieldgate.common.config import GatewaySettings
from fieldgate.common.exceptions import DeviceNotFoundError, FieldgateError, failure_payload
from fieldgate.common.logging_setup import LogContext, get_service_logger
from fieldgate.services.cache.realtime import RealtimeCache
from fieldgate.services.control.schedule import ReadingScheduleStatus, ScheduleStatusProvider
from fieldgate.services.control.service import ControlService
from fieldgate.services.device.connection_manager import ConnectionManager
from fieldgate.services.device.health import HealthTracker
from fieldgate.services.device.registry import DeviceRegistry
from fieldgate.services.monitoring.service import MonitoringService
from fieldgate.services.polling.events import EventHub, PollEvent
from fieldgate.services.polling.service import PollingService
from fieldgate.storage.config_store import ConfigStore, FileConfigStore
from fieldgate.storage.history import HistorySink, HistoryWriter, SqliteHistorySink

logger = get_service_logger("gateway")


class GatewayService:
    """
    The gateway process.

    Usage:
        service = GatewayService(load_gateway_settings("gateway.yaml"))
        await service.run()   # until SIGINT/SIGTERM
    """

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        store: ConfigStore | None = None,
        schedule: ScheduleStatusProvider | None = None,
        history: HistorySink | None = None,
        registry: DeviceRegistry | None = None,
    ):
        self.settings = settings or GatewaySettings()
        s = self.settings

        self.store = store or FileConfigStore(s.devices_file)
        self.registry = registry or DeviceRegistry(ConnectionManager(
            network_timeout=s.network_timeout_s,
            serial_timeout=s.serial_timeout_s,
            serial_acquire_timeout=s.serial_acquire_timeout_s,
        ))
        self.hub = EventHub(queue_size=s.event_queue_size)
        self.health = HealthTracker()
        self.cache = RealtimeCache(ttl_s=s.cache_ttl_s)

        self.polling = PollingService(self.registry, self.hub, self.health)
        self.monitoring = MonitoringService(
            self.registry,
            self.store,
            self.hub,
            self.health,
            interval_ms=s.monitoring_interval_ms,
            snapshot_interval_s=s.snapshot_interval_s,
        )
        self.control = ControlService(
            self.registry,
            schedule or ReadingScheduleStatus(self.cache),
            self.cache,
        )

        if history is None and s.history_db:
            history = SqliteHistorySink(s.history_db)
        self.history_writer = HistoryWriter(history) if history is not None else None

        self.hub.subscribe(self.cache.handle_event)
        if self.history_writer is not None:
            self.hub.subscribe(self.history_writer.handle_event)

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._health_runner: web.AppRunner | None = None
        self._shutdown_event = asyncio.Event()

    # -- lifecycle ------------------------------------------------------------

    async def start(self, serve_http: bool = True) -> None:
        """Start the event hub, monitoring (if configured) and the HTTP server"""
        logger.info("Starting gateway")
        self._running = True
        await self.hub.start()

        if self.settings.auto_start_monitoring:
            await self.monitoring.start()

        if serve_http:
            await self._start_health_server()

        logger.info(
            f"Gateway started ({len(self.registry)} devices)",
            extra={"device_count": len(self.registry)},
        )

    async def stop(self) -> None:
        """Stop everything; in-flight device I/O is allowed to finish"""
        if not self._running:
            return
        logger.info("Stopping gateway")
        self._running = False

        await self.monitoring.stop()
        await self.polling.stop_all(wait=True)
        await self.hub.stop()
        await self.registry.close_all()
        await self._stop_health_server()

        logger.info("Gateway stopped")

    async def run(self) -> None:
        """Start, wait for a shutdown signal, then stop"""
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # -- control surface ------------------------------------------------------

    async def _respond(self, operation: str, call: Awaitable[Any]) -> dict[str, Any]:
        """Run a control-surface call and wrap its outcome"""
        with LogContext(operation=operation):
            try:
                result = await call
            except FieldgateError as e:
                logger.info(f"{operation} failed: {e.message}", extra={"kind": e.kind})
                return failure_payload(e)
            except Exception as e:
                logger.error(f"{operation} raised unexpectedly: {e}", exc_info=True)
                return failure_payload(e)

        payload: dict[str, Any] = {"success": True}
        if isinstance(result, dict):
            payload.update(result)
        elif result is not None:
            payload["data"] = result
        return payload

    async def start_polling(self, device_id: str, interval_ms: int) -> dict[str, Any]:
        async def call():
            job = await self.polling.start(device_id, interval_ms)
            return job.to_dict()
        return await self._respond("start_polling", call())

    async def stop_polling(self, device_id: str) -> dict[str, Any]:
        async def call():
            stopped = await self.polling.stop(device_id)
            return {"device_id": device_id, "stopped": stopped}
        return await self._respond("stop_polling", call())

    async def get_polling_status(self, device_id: str | None = None) -> dict[str, Any]:
        return await self._respond("get_polling_status", _sync_call(self.polling.status, device_id))

    async def set_parameter(
        self,
        device_id: str,
        name: str,
        value: Any,
        data_type: str,
        register_index: int,
        byte_order: str | None = None,
    ) -> dict[str, Any]:
        payload = await self._respond(
            "set_parameter",
            self.control.set_parameter(device_id, name, value, data_type, register_index, byte_order),
        )
        if not payload["success"] and payload["error"]["kind"] == "ScheduleConflictError":
            payload["isScheduleActive"] = True
        return payload

    async def control_device(self, device_id: str, parameters: list[dict[str, Any]]) -> dict[str, Any]:
        payload = await self._respond(
            "control_device", self.control.control_device(device_id, parameters)
        )
        return payload

    async def batch_control(self, commands: list[dict[str, Any]]) -> dict[str, Any]:
        async def call():
            results = await self.control.batch_control(commands)
            succeeded = sum(1 for r in results if r.get("success"))
            return {
                "results": results,
                "succeeded": succeeded,
                "failed": len(results) - succeeded,
            }
        return await self._respond("batch_control", call())

    async def check_schedule_status(self, device_id: str) -> dict[str, Any]:
        async def call():
            self.registry.require(device_id)
            active = await self.control.check_schedule_status(device_id)
            return {"device_id": device_id, "isScheduleActive": active}
        return await self._respond("check_schedule_status", call())

    async def get_device_health(self, device_id: str) -> dict[str, Any]:
        async def call():
            health = self.health.get(device_id)
            if health is None:
                raise DeviceNotFoundError(device_id)
            return health.to_dict()
        return await self._respond("get_device_health", call())

    async def get_service_stats(self) -> dict[str, Any]:
        return await self._respond("get_service_stats", _sync_call(self.monitoring.get_service_stats))

    async def start_monitoring(self, interval_ms: int | None = None) -> dict[str, Any]:
        return await self._respond("start_monitoring", self.monitoring.start(interval_ms))

    async def stop_monitoring(self) -> dict[str, Any]:
        async def call():
            await self.monitoring.stop()
            return {"running": False}
        return await self._respond("stop_monitoring", call())

    async def get_monitoring_speed(self) -> dict[str, Any]:
        return await self._respond("get_monitoring_speed", _sync_call(self.monitoring.get_monitoring_speed))

    async def set_monitoring_speed(self, speed: str | int) -> dict[str, Any]:
        """Accepts a preset name or a millisecond value"""
        def apply() -> dict[str, Any]:
            if isinstance(speed, str) and speed.strip().isdigit():
                return self.monitoring.set_monitoring_interval(int(speed))
            if isinstance(speed, str):
                return self.monitoring.set_monitoring_speed(speed)
            return self.monitoring.set_monitoring_interval(speed)

        return await self._respond("set_monitoring_speed", _sync_call(apply))

    async def trigger_device_sync(self, device_id: str) -> dict[str, Any]:
        return await self._respond("trigger_device_sync", self.monitoring.trigger_device_sync(device_id))

    async def force_device_initialization(self) -> dict[str, Any]:
        return await self._respond(
            "force_device_initialization", self.monitoring.force_device_initialization()
        )

    async def get_device_readings(self, device_id: str, max_age_s: float | None = None) -> dict[str, Any]:
        """Cached snapshot when fresh enough, otherwise a live read"""
        async def call():
            snapshot = self.cache.get(device_id, max_age_s)
            if snapshot is not None:
                return {**snapshot.to_dict(), "cached": True}

            device = self.registry.require(device_id)
            readings = await device.read_all_parameters()
            event = PollEvent(
                device_id=device.id,
                device_name=device.name,
                readings=list(readings.values()),
                source="request",
            )
            self.cache.put(event)
            return {**event.to_dict(), "cached": False}
        return await self._respond("get_device_readings", call())

    # -- HTTP -----------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_get("/readings", self._readings_handler)
        return app

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        self._health_runner = web.AppRunner(self.build_app())
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, self.settings.health_host, self.settings.health_port)
        await site.start()

        logger.info(f"Health server started on port {self.settings.health_port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return web.json_response({
            "status": "healthy" if self._running else "unhealthy",
            "service": "fieldgate",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "devices": self.health.counts(),
            "connections": self.registry.connections.get_stats(),
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        """Monitoring, polling and per-device health"""
        return web.json_response({
            "monitoring": self.monitoring.get_service_stats(),
            "polling": self.polling.status(),
            "events": self.hub.get_stats(),
            "cache": self.cache.get_stats(),
            "devices": {h.device_id: h.to_dict() for h in self.health.all()},
        }, dumps=_dumps)

    async def _readings_handler(self, request: web.Request) -> web.Response:
        """Latest cached readings of every device"""
        readings = {}
        for device_id in self.registry.ids():
            snapshot = self.cache.get(device_id)
            if snapshot is not None:
                readings[device_id] = snapshot.to_dict()
        return web.json_response(readings)


async def _sync_call(func, *args) -> Any:
    """Run a synchronous control-surface call inside _respond"""
    return func(*args)


def _dumps(data: Any) -> str:
    return json.dumps(data, default=str)
