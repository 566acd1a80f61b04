"""
Shared test fixtures for the Fieldgate test suite.
"""

import asyncio
import time

import pytest

from fieldgate.common.config import (
    DeviceConfig,
    Float32Parameter,
    NetworkConnection,
    UInt16Parameter,
)
from fieldgate.common.exceptions import DeviceConnectionError, ProtocolError
from fieldgate.services.device.connection_manager import ConnectionManager
from fieldgate.services.device.device import Device
from fieldgate.services.device.registry import DeviceRegistry
from fieldgate.services.device.transport import ModbusTransport
from fieldgate.services.polling.events import EventHub


class InstrumentedTransport(ModbusTransport):
    """
    In-memory transport recording every call with its start/end time.

    ``registers`` maps (function_code, address) -> word. Reading a range
    containing an address in ``invalid`` raises an Illegal Data Address
    protocol error.
    """

    def __init__(self, registers=None, delay: float = 0.0, device_id: str = "dev-1"):
        super().__init__(unit_id=1, timeout=1.0, device_id=device_id, device_name=device_id)
        self.registers: dict[tuple[int, int], int] = dict(registers or {})
        self.invalid: set[int] = set()
        self.delay = delay
        self.offline = False
        self.connected = False
        self.close_count = 0

        self.calls: list[tuple[str, tuple, float, float]] = []
        self.active = 0
        self.max_active = 0

    @property
    def label(self) -> str:
        return "fake:502"

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> None:
        if self.offline:
            raise DeviceConnectionError("Unable to connect to fake:502", device_id=self.device_id)
        self.connected = True

    async def close(self) -> None:
        self.close_count += 1
        self.connected = False

    async def _record(self, op: str, args: tuple):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        start = time.monotonic()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.offline:
                raise DeviceConnectionError("Connection refused", device_id=self.device_id)
        finally:
            self.active -= 1
            self.calls.append((op, args, start, time.monotonic()))

    async def read_registers(self, function_code: int, address: int, count: int) -> list[int]:
        await self.connect()
        await self._record("read", (function_code, address, count))
        if any(a in self.invalid for a in range(address, address + count)):
            raise ProtocolError(
                "Illegal Data Address", exception_code=2, device_id=self.device_id
            )
        return [self.registers.get((function_code, a), 0) for a in range(address, address + count)]

    async def write_registers(self, address: int, values: list[int]) -> None:
        await self.connect()
        await self._record("write", (address, list(values)))
        for offset, value in enumerate(values):
            self.registers[(3, address + offset)] = value

    async def write_coil(self, address: int, value: bool) -> None:
        await self.connect()
        await self._record("write_coil", (address, bool(value)))
        self.registers[(1, address)] = 1 if value else 0

    def reads(self) -> list[tuple]:
        return [args for op, args, _, _ in self.calls if op == "read"]

    def writes(self) -> list[tuple]:
        return [args for op, args, _, _ in self.calls if op.startswith("write")]


def make_device_config(device_id: str = "dev-1", parameters=None, enabled: bool = True) -> DeviceConfig:
    return DeviceConfig(
        id=device_id,
        name=f"Device {device_id}",
        connection=NetworkConnection(host="10.0.0.5", port=502, unit_id=1),
        enabled=enabled,
        parameters=list(parameters or []),
    )


@pytest.fixture
def transport():
    return InstrumentedTransport()


@pytest.fixture
def basic_parameters():
    return [
        UInt16Parameter(id="p1", name="Voltage", address=0, scaling_factor=10, decimal_point=1, unit="V"),
        UInt16Parameter(id="p2", name="Current", address=1, scaling_factor=100, decimal_point=2, unit="A"),
        Float32Parameter(id="p3", name="Temperature", address=2, unit="C", decimal_point=1),
    ]


@pytest.fixture
def device_config(basic_parameters):
    return make_device_config(parameters=basic_parameters)


@pytest.fixture
def device(device_config, transport):
    return Device(device_config, transport)


@pytest.fixture
def connections():
    return ConnectionManager()


@pytest.fixture
def registry(connections):
    return DeviceRegistry(connections)


@pytest.fixture
def hub():
    return EventHub(queue_size=10)


@pytest.fixture
def collected(hub):
    """Events dispatched by the hub, in order"""
    events = []
    hub.subscribe(events.append)
    return events
