"""
Async Modbus Transport

Wrappers around pymodbus async clients for Modbus TCP and RTU serial.
Each transport owns exactly one underlying client and turns every
failure into a typed gateway error:

- timeout            -> DeviceTimeoutError
- connect / link     -> DeviceConnectionError
- exception response -> ProtocolError (with the Modbus exception code)

On timeout or link failure the underlying client is always closed (and
the serial port lease released) before the error propagates.

Serial transports for different unit ids on one port path share a
SerialLine: one client, one port lease and one bus lock.
"""

import asyncio
from contextlib import asynccontextmanager, nullcontext
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable

from pymodbus.client import AsyncModbusSerialClient, AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from fieldgate.common.config import NetworkConnection, SerialConnection
from fieldgate.common.exceptions import (
    DeviceConnectionError,
    DeviceTimeoutError,
    ProtocolError,
)
from fieldgate.common.logging_setup import get_service_logger

if TYPE_CHECKING:
    from .connection_manager import PortLease, SerialPortTable

logger = get_service_logger("device.transport")


DEFAULT_NETWORK_TIMEOUT_S = 3.0
DEFAULT_SERIAL_TIMEOUT_S = 3.0

# Modbus PDU limits
MAX_REGISTERS_PER_READ = 125
MAX_BITS_PER_READ = 2000


class ModbusTransport:
    """
    Base transport: connection state, timeouts and error mapping.

    Subclasses provide ``_create_client`` and the lease hooks.
    """

    _client: Any = None

    def __init__(
        self,
        unit_id: int = 1,
        timeout: float = DEFAULT_NETWORK_TIMEOUT_S,
        device_id: str | None = None,
        device_name: str | None = None,
    ):
        self.unit_id = unit_id
        self.timeout = timeout
        self.device_id = device_id
        self.device_name = device_name
        self._closed = False

    @property
    def label(self) -> str:
        raise NotImplementedError

    @property
    def is_connected(self) -> bool:
        return self._client is not None and bool(self._client.connected)

    # -- subclass hooks -------------------------------------------------------

    def _create_client(self) -> Any:
        raise NotImplementedError

    async def _acquire(self) -> None:
        """Reserve any exclusive resource before connecting"""

    async def _release(self) -> None:
        """Release whatever _acquire reserved"""

    def _exclusive(self) -> Any:
        """Async context held around connect plus one request/response"""
        return nullcontext()

    # -- lifecycle ------------------------------------------------------------

    async def connect(self) -> None:
        """
        Open the connection if not already open.

        Raises:
            DeviceConnectionError: connect refused, port busy or link down
            DeviceTimeoutError: connect did not complete in time
        """
        if self.is_connected:
            return

        # Drop a half-open client from a previous failure
        if self._client is not None:
            await self._teardown()

        await self._acquire()
        try:
            self._client = self._create_client()
            await asyncio.wait_for(self._client.connect(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._teardown()
            raise DeviceTimeoutError(
                f"Connect to {self.label} timed out after {self.timeout}s",
                **self._error_context(),
            ) from None
        except (ModbusException, OSError) as e:
            await self._teardown()
            raise DeviceConnectionError(
                f"Connect to {self.label} failed: {e}", **self._error_context()
            ) from e

        if not self._client.connected:
            await self._teardown()
            raise DeviceConnectionError(
                f"Unable to connect to {self.label}", **self._error_context()
            )

        self._closed = False
        logger.debug(
            f"Connected to {self.label}",
            extra={"device_id": self.device_id, "endpoint": self.label},
        )

    async def close(self) -> None:
        """Close the connection. Safe to call repeatedly."""
        if self._client is None and self._closed:
            return
        await self._teardown()
        self._closed = True
        logger.debug(f"Closed {self.label}", extra={"device_id": self.device_id})

    async def _teardown(self) -> None:
        client, self._client = self._client, None
        try:
            if client is not None:
                client.close()
        except Exception as e:
            logger.warning(f"Error closing {self.label}: {e}")
        finally:
            await self._release()

    @asynccontextmanager
    async def session(self) -> AsyncIterator["ModbusTransport"]:
        """Connect for the duration of the block and always close after"""
        try:
            await self.connect()
            yield self
        finally:
            await self.close()

    # -- primitives -----------------------------------------------------------

    async def read_registers(self, function_code: int, address: int, count: int) -> list[int]:
        """
        Read ``count`` registers (or bits) with the given read function code.

        Bit reads (FC1/FC2) return 0/1 integers.
        """
        methods = {
            1: "read_coils",
            2: "read_discrete_inputs",
            3: "read_holding_registers",
            4: "read_input_registers",
        }
        if function_code not in methods:
            raise ValueError(f"Unsupported read function code: {function_code}")

        response = await self._execute(
            lambda client: getattr(client, methods[function_code])(
                address=address, count=count, device_id=self.unit_id
            ),
            f"FC{function_code} read {address}+{count}",
        )

        if function_code in (1, 2):
            return [1 if bit else 0 for bit in list(response.bits)[:count]]
        return list(response.registers)

    async def write_registers(self, address: int, values: list[int]) -> None:
        """Write holding registers in a single FC16 request"""
        await self._execute(
            lambda client: client.write_registers(
                address=address, values=list(values), device_id=self.unit_id
            ),
            f"write {address}={values}",
        )

    async def write_coil(self, address: int, value: bool) -> None:
        """Write a single coil (FC5)"""
        await self._execute(
            lambda client: client.write_coil(
                address=address, value=bool(value), device_id=self.unit_id
            ),
            f"write coil {address}={bool(value)}",
        )

    async def _execute(self, call: Callable[[Any], Awaitable[Any]], description: str) -> Any:
        async with self._exclusive():
            await self.connect()
            return await self._exchange(call, description)

    async def _exchange(self, call: Callable[[Any], Awaitable[Any]], description: str) -> Any:
        try:
            response = await asyncio.wait_for(call(self._client), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._teardown()
            raise DeviceTimeoutError(
                f"{description} on {self.label} timed out after {self.timeout}s",
                **self._error_context(),
            ) from None
        except (ModbusException, OSError) as e:
            await self._teardown()
            raise DeviceConnectionError(
                f"{description} on {self.label} failed: {e}", **self._error_context()
            ) from e

        if response.isError():
            code = getattr(response, "exception_code", None)
            name = ProtocolError.exception_name(code) if code is not None else str(response)
            raise ProtocolError(
                f"{description} on {self.label} rejected: {name}",
                exception_code=code,
                device_id=self.device_id,
                device_name=self.device_name,
            )
        return response

    def _error_context(self) -> dict:
        return {"device_id": self.device_id, "device_name": self.device_name}


class NetworkTransport(ModbusTransport):
    """
    Async Modbus TCP transport.

    Also covers RTU-over-TCP gateways addressed by unit id.
    """

    def __init__(
        self,
        settings: NetworkConnection,
        timeout: float = DEFAULT_NETWORK_TIMEOUT_S,
        device_id: str | None = None,
        device_name: str | None = None,
    ):
        super().__init__(settings.unit_id, timeout, device_id, device_name)
        self.settings = settings

    @property
    def label(self) -> str:
        return self.settings.label

    def _create_client(self) -> AsyncModbusTcpClient:
        return AsyncModbusTcpClient(
            host=self.settings.host,
            port=self.settings.port,
            timeout=self.timeout,
        )

    def _error_context(self) -> dict:
        return {
            **super()._error_context(),
            "host": self.settings.host,
            "port": self.settings.port,
        }


class SerialLine:
    """
    One serial port path and the single pymodbus client open on it.

    Every unit id on the path shares the client and the port lease;
    ``lock`` keeps one request/response exchange on the bus at a time.
    The line is torn down when its last transport closes.
    """

    def __init__(
        self,
        settings: SerialConnection,
        port_table: "SerialPortTable",
        acquire_timeout: float = 0.0,
    ):
        self.settings = settings
        self.port_table = port_table
        self.acquire_timeout = acquire_timeout
        self.lock = asyncio.Lock()
        self.client: Any = None
        self.users: set["SerialTransport"] = set()
        self._lease: "PortLease | None" = None

    @property
    def path(self) -> str:
        return self.settings.port

    @property
    def is_connected(self) -> bool:
        return self.client is not None and bool(self.client.connected)

    def same_framing(self, settings: SerialConnection) -> bool:
        return (
            settings.baud_rate,
            settings.data_bits,
            settings.stop_bits,
            settings.parity,
        ) == (
            self.settings.baud_rate,
            self.settings.data_bits,
            self.settings.stop_bits,
            self.settings.parity,
        )

    async def acquire(
        self,
        owner: str,
        device_id: str | None = None,
        device_name: str | None = None,
    ) -> None:
        if self._lease is not None and not self._lease.released:
            return
        self._lease = await self.port_table.acquire(
            self.path,
            owner=owner,
            timeout=self.acquire_timeout,
            device_id=device_id,
            device_name=device_name,
        )

    async def release(self) -> None:
        lease, self._lease = self._lease, None
        if lease is not None:
            await lease.release()

    def get_stats(self) -> dict:
        return {
            "connected": self.is_connected,
            "units": sorted(t.unit_id for t in self.users),
        }


class SerialTransport(ModbusTransport):
    """
    Async Modbus RTU serial transport for one unit id.

    The client lives on a SerialLine. Transports built by the
    ConnectionManager share the line of their port path; a transport
    built on its own gets a private line, and a port held by another
    line makes connect fail with "port busy".
    """

    def __init__(
        self,
        settings: SerialConnection,
        port_table: "SerialPortTable",
        timeout: float = DEFAULT_SERIAL_TIMEOUT_S,
        acquire_timeout: float = 0.0,
        device_id: str | None = None,
        device_name: str | None = None,
        line: SerialLine | None = None,
    ):
        super().__init__(settings.unit_id, timeout, device_id, device_name)
        self.settings = settings
        self.line = line or SerialLine(settings, port_table, acquire_timeout)

    @property
    def _client(self) -> Any:
        return self.line.client

    @_client.setter
    def _client(self, client: Any) -> None:
        self.line.client = client

    @property
    def label(self) -> str:
        return f"{self.settings.label}#{self.unit_id}"

    def _create_client(self) -> AsyncModbusSerialClient:
        line = self.line.settings
        return AsyncModbusSerialClient(
            port=line.port,
            baudrate=line.baud_rate,
            bytesize=line.data_bits,
            parity=line.parity,
            stopbits=line.stop_bits,
            timeout=self.timeout,
        )

    def _exclusive(self) -> asyncio.Lock:
        return self.line.lock

    async def connect(self) -> None:
        self.line.users.add(self)
        await super().connect()

    async def close(self) -> None:
        """Detach from the line; the last transport to leave closes it"""
        self.line.users.discard(self)
        if self.line.users:
            self._closed = True
            return
        await super().close()

    async def _acquire(self) -> None:
        await self.line.acquire(
            owner=self.device_id or self.label,
            device_id=self.device_id,
            device_name=self.device_name,
        )

    async def _release(self) -> None:
        await self.line.release()

    def _error_context(self) -> dict:
        return {**super()._error_context(), "port": self.settings.port}
