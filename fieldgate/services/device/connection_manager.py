"""
Connection Manager

Owns the exclusive-resource tables of the gateway:

- serial ports, leased by path (one holder per path at a time)
- serial lines, one per path, shared by every unit id on that bus
- transports, one live transport per device id

Replacing a device's transport always closes the previous one.
"""

import asyncio
from datetime import datetime, timezone
from dataclasses import dataclass, field

from fieldgate.common.config import DeviceConfig, NetworkConnection, SerialConnection
from fieldgate.common.exceptions import DeviceConnectionError
from fieldgate.common.logging_setup import get_service_logger
from .transport import (
    DEFAULT_NETWORK_TIMEOUT_S,
    DEFAULT_SERIAL_TIMEOUT_S,
    ModbusTransport,
    NetworkTransport,
    SerialLine,
    SerialTransport,
)

logger = get_service_logger("device.connections")


@dataclass
class PortLease:
    """Exclusive hold on one serial port path"""
    table: "SerialPortTable"
    path: str
    owner: str
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released: bool = False

    async def release(self) -> None:
        """Give the port back. Only the first call has any effect."""
        if self.released:
            return
        self.released = True
        await self.table._release(self)


class SerialPortTable:
    """
    Serial ports as exclusive resources keyed by path.

    A held path is never shared: a second acquisition fails immediately
    with "port busy", or waits up to ``timeout`` seconds for release.
    """

    def __init__(self):
        self._held: dict[str, PortLease] = {}
        self._condition = asyncio.Condition()

    def is_held(self, path: str) -> bool:
        return path in self._held

    def holder(self, path: str) -> str | None:
        lease = self._held.get(path)
        return lease.owner if lease else None

    async def acquire(
        self,
        path: str,
        owner: str,
        timeout: float = 0.0,
        device_id: str | None = None,
        device_name: str | None = None,
    ) -> PortLease:
        """
        Lease ``path`` for ``owner``.

        Raises:
            DeviceConnectionError: the port is still held after ``timeout``
        """
        async with self._condition:
            if path in self._held and timeout > 0:
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(lambda: path not in self._held),
                        timeout=timeout,
                    )
                except asyncio.TimeoutError:
                    pass

            current = self._held.get(path)
            if current is not None:
                raise DeviceConnectionError(
                    f"Serial port {path} busy (held by {current.owner})",
                    device_id=device_id,
                    device_name=device_name,
                    port=path,
                )

            lease = PortLease(table=self, path=path, owner=owner)
            self._held[path] = lease
            logger.debug(f"Serial port {path} leased to {owner}")
            return lease

    async def _release(self, lease: PortLease) -> None:
        async with self._condition:
            if self._held.get(lease.path) is lease:
                del self._held[lease.path]
                logger.debug(f"Serial port {lease.path} released by {lease.owner}")
            self._condition.notify_all()

    def get_stats(self) -> dict:
        return {
            path: {"owner": lease.owner, "acquired_at": lease.acquired_at.isoformat()}
            for path, lease in self._held.items()
        }


class ConnectionManager:
    """
    Creates transports and keeps exactly one live transport per device.

    Transports open lazily on first I/O; the manager only tracks them so
    replacement and shutdown close the right handle.
    """

    def __init__(
        self,
        network_timeout: float = DEFAULT_NETWORK_TIMEOUT_S,
        serial_timeout: float = DEFAULT_SERIAL_TIMEOUT_S,
        serial_acquire_timeout: float = 0.0,
    ):
        self.network_timeout = network_timeout
        self.serial_timeout = serial_timeout
        self.serial_acquire_timeout = serial_acquire_timeout

        self.ports = SerialPortTable()
        self._lines: dict[str, SerialLine] = {}
        self._transports: dict[str, ModbusTransport] = {}

    def serial_line(self, connection: SerialConnection) -> SerialLine:
        """The shared line for ``connection.port``, created on first use"""
        line = self._lines.get(connection.port)
        if line is None:
            line = SerialLine(connection, self.ports, acquire_timeout=self.serial_acquire_timeout)
            self._lines[connection.port] = line
        elif not line.same_framing(connection):
            logger.warning(
                f"Serial port {connection.port}: unit {connection.unit_id} framing "
                f"differs from the open line, using {line.settings.baud_rate} baud "
                f"{line.settings.data_bits}{line.settings.parity}{line.settings.stop_bits}"
            )
        return line

    def build_transport(self, config: DeviceConfig) -> ModbusTransport:
        """Create (but do not track or open) a transport for a device"""
        connection = config.connection
        if isinstance(connection, SerialConnection):
            return SerialTransport(
                connection,
                self.ports,
                timeout=config.timeout_s or self.serial_timeout,
                acquire_timeout=self.serial_acquire_timeout,
                device_id=config.id,
                device_name=config.name,
                line=self.serial_line(connection),
            )
        if isinstance(connection, NetworkConnection):
            return NetworkTransport(
                connection,
                timeout=config.timeout_s or self.network_timeout,
                device_id=config.id,
                device_name=config.name,
            )
        raise TypeError(f"Unsupported connection settings: {connection!r}")

    async def open_transport(self, config: DeviceConfig) -> ModbusTransport:
        """Create the transport for ``config.id``, closing any previous one"""
        transport = self.build_transport(config)
        previous = self._transports.get(config.id)
        self._transports[config.id] = transport
        if previous is not None and previous is not transport:
            logger.info(f"Replacing transport for device {config.name} ({config.id})")
            await previous.close()
        return transport

    def get_transport(self, device_id: str) -> ModbusTransport | None:
        return self._transports.get(device_id)

    async def release(self, device_id: str, transport: ModbusTransport | None = None) -> None:
        """
        Close and forget the transport of ``device_id``.

        When ``transport`` is given, only that exact instance is released.
        """
        current = self._transports.get(device_id)
        if current is None or (transport is not None and current is not transport):
            if transport is not None:
                await transport.close()
            return
        del self._transports[device_id]
        await current.close()

    async def close_all(self) -> None:
        """Close every tracked transport"""
        transports = list(self._transports.values())
        self._transports.clear()
        for transport in transports:
            try:
                await transport.close()
            except Exception as e:
                logger.warning(f"Error closing transport {transport.label}: {e}")
        self._lines.clear()
        logger.info(f"Closed {len(transports)} transport(s)")

    def get_stats(self) -> dict:
        """Connection statistics"""
        return {
            "total_transports": len(self._transports),
            "transports": {
                device_id: {
                    "endpoint": transport.label,
                    "connected": transport.is_connected,
                }
                for device_id, transport in self._transports.items()
            },
            "serial_ports": self.ports.get_stats(),
            "serial_lines": {path: line.get_stats() for path, line in self._lines.items()},
        }
