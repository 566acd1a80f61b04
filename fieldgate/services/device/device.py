"""
Device

Binds one transport to a device's parameter definitions and exposes
read-all, read-one and write operations.

Reads degrade per parameter: a decode or protocol error nulls only the
affected parameter. Writes fail the whole call on any error. All
operations on one device are serialized FIFO by a per-device lock.
"""

import asyncio
import time
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any

from fieldgate.common.config import (
    ByteOrder,
    DataType,
    DeviceConfig,
    Parameter,
    RegisterClass,
)
from fieldgate.common.exceptions import (
    ConfigurationError,
    DecodeError,
    DeviceConnectionError,
    DisabledDeviceError,
    FieldgateError,
    ProtocolError,
)
from fieldgate.common.logging_setup import get_service_logger, log_device_read, log_device_write
from . import codec
from .transport import MAX_BITS_PER_READ, MAX_REGISTERS_PER_READ, ModbusTransport

logger = get_service_logger("device")


@dataclass
class Reading:
    """One decoded parameter value from one poll"""
    parameter_id: str
    name: str
    address: int
    value: int | float | None
    unit: str = ""
    error: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def quality(self) -> str:
        return "good" if self.error is None else "bad"

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "name": self.name,
            "address": self.address,
            "value": self.value,
            "unit": self.unit,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class DeviceStats:
    """Communication statistics for one device"""
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_response_ms: float = 0.0
    last_request_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None

    @property
    def average_response_ms(self) -> float:
        if self.success_count == 0:
            return 0.0
        return self.total_response_ms / self.success_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_count": self.request_count,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "average_response_ms": round(self.average_response_ms, 2),
            "last_request_at": self.last_request_at.isoformat() if self.last_request_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
        }


@dataclass
class ReadGroup:
    """Parameters covered by one physical read"""
    function_code: int
    start: int
    count: int
    parameters: list[Parameter]


def plan_reads(parameters: list[Parameter]) -> list[ReadGroup]:
    """
    Group parameters into minimal physical reads.

    Parameters sharing a function code and a contiguous (or overlapping)
    address range are merged, up to the PDU limit for their register class.
    """
    groups: list[ReadGroup] = []
    ordered = sorted(parameters, key=lambda p: (p.function_code, p.address, p.end_address))

    for parameter in ordered:
        limit = MAX_BITS_PER_READ if parameter.register_class.is_bit else MAX_REGISTERS_PER_READ
        current = groups[-1] if groups else None

        if (
            current is not None
            and current.function_code == parameter.function_code
            and parameter.address <= current.start + current.count
            and max(current.start + current.count, parameter.end_address) - current.start <= limit
        ):
            current.count = max(current.start + current.count, parameter.end_address) - current.start
            current.parameters.append(parameter)
            continue

        groups.append(ReadGroup(
            function_code=parameter.function_code,
            start=parameter.address,
            count=parameter.word_count,
            parameters=[parameter],
        ))

    return groups


class Device:
    """
    A configured field device bound to its transport.

    Usage:
        device = Device(config, transport)
        readings = await device.read_all_parameters()
        await device.write_parameter("setpoint", 42.5)
    """

    def __init__(self, config: DeviceConfig, transport: ModbusTransport):
        self.config = config
        self.transport = transport
        self.stats = DeviceStats()

        self._parameters: dict[str, Parameter] = {}
        self._lock = asyncio.Lock()

        for parameter in config.parameters:
            self.add_parameter(parameter)

    # -- identity -------------------------------------------------------------

    @property
    def id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def busy(self) -> bool:
        """True while an operation holds the device"""
        return self._lock.locked()

    @property
    def parameters(self) -> list[Parameter]:
        return list(self._parameters.values())

    # -- parameter set --------------------------------------------------------

    def add_parameter(self, parameter: Parameter) -> None:
        """Add a parameter; duplicate ids are rejected"""
        if parameter.id in self._parameters:
            raise ConfigurationError(
                f"Duplicate parameter id {parameter.id!r} on device {self.name}",
                field="id",
            )
        self._parameters[parameter.id] = parameter

    def remove_parameter(self, parameter_id: str) -> bool:
        return self._parameters.pop(parameter_id, None) is not None

    def get_parameter(self, parameter_id: str) -> Parameter | None:
        return self._parameters.get(parameter_id)

    def find_parameter(self, name: str) -> Parameter | None:
        """Look up a parameter by name"""
        for parameter in self._parameters.values():
            if parameter.name == name:
                return parameter
        return None

    # -- lifecycle ------------------------------------------------------------

    async def set_enabled(self, enabled: bool) -> None:
        """Enable or disable the device; disabling closes the connection"""
        async with self._lock:
            self.config.enabled = enabled
            if not enabled:
                await self.transport.close()
        logger.info(f"Device {self.name} {'enabled' if enabled else 'disabled'}")

    async def close(self) -> None:
        """Close the transport once any in-flight operation finishes"""
        async with self._lock:
            await self.transport.close()

    # -- reads ----------------------------------------------------------------

    async def read_all_parameters(self) -> dict[str, Reading]:
        """
        Read every parameter, grouped into minimal physical reads.

        Never raises for transport, protocol or decode failures; each
        affected parameter carries its error instead.
        """
        async with self._lock:
            return await self._read_parameters(self.parameters)

    async def read_parameter(self, parameter_id: str) -> Reading:
        """Read a single parameter"""
        parameter = self._parameters.get(parameter_id)
        if parameter is None:
            raise ConfigurationError(
                f"Unknown parameter {parameter_id!r} on device {self.name}",
                field="id",
            )
        async with self._lock:
            readings = await self._read_parameters([parameter])
        return readings[parameter.id]

    async def _read_parameters(self, parameters: list[Parameter]) -> dict[str, Reading]:
        readings: dict[str, Reading] = {}
        link_error: DeviceConnectionError | None = None
        cascaded = 0

        for group in plan_reads(parameters):
            # Device unreachable: fail the rest without more I/O
            if link_error is not None:
                for parameter in group.parameters:
                    readings[parameter.id] = self._failed(parameter, link_error)
                    cascaded += 1
                continue

            try:
                words = await self._transport_call(
                    self.transport.read_registers(group.function_code, group.start, group.count)
                )
            except ProtocolError as e:
                if len(group.parameters) > 1:
                    logger.debug(
                        f"Group read {group.start}+{group.count} on {self.name} rejected "
                        f"({e.message}), retrying per parameter"
                    )
                    link_error = await self._read_individually(group, readings)
                else:
                    readings[group.parameters[0].id] = self._failed(group.parameters[0], e)
                continue
            except DeviceConnectionError as e:
                link_error = e
                for parameter in group.parameters:
                    readings[parameter.id] = self._failed(parameter, e)
                continue

            for parameter in group.parameters:
                readings[parameter.id] = self._decode(parameter, words, group.start)

        if cascaded:
            logger.warning(
                f"Device {self.name} not reachable, skipped {cascaded} remaining parameter(s)",
                extra={"device_id": self.id},
            )

        for reading in readings.values():
            log_device_read(
                logger, self.name, reading.name, reading.value,
                success=reading.ok, error=reading.error,
            )
        return readings

    async def _read_individually(
        self,
        group: ReadGroup,
        readings: dict[str, Reading],
    ) -> DeviceConnectionError | None:
        """Re-read a rejected group one parameter at a time"""
        link_error: DeviceConnectionError | None = None
        for parameter in group.parameters:
            if link_error is not None:
                readings[parameter.id] = self._failed(parameter, link_error)
                continue
            try:
                words = await self._transport_call(
                    self.transport.read_registers(
                        parameter.function_code, parameter.address, parameter.word_count
                    )
                )
            except ProtocolError as e:
                readings[parameter.id] = self._failed(parameter, e)
                continue
            except DeviceConnectionError as e:
                link_error = e
                readings[parameter.id] = self._failed(parameter, e)
                continue
            readings[parameter.id] = self._decode(parameter, words, parameter.address)
        return link_error

    def _decode(self, parameter: Parameter, words: list[int], start: int) -> Reading:
        offset = parameter.address - start
        chunk = words[offset:offset + parameter.word_count]
        try:
            if parameter.register_class.is_bit:
                if not chunk:
                    raise DecodeError(f"No bit returned for {parameter.name}")
                value = 1 if chunk[0] else 0
            else:
                value = codec.decode(
                    chunk,
                    parameter.data_type,
                    parameter.byte_order,
                    parameter.scaling_factor,
                    parameter.decimal_point,
                )
        except FieldgateError as e:
            return self._failed(parameter, e)

        return Reading(
            parameter_id=parameter.id,
            name=parameter.name,
            address=parameter.address,
            value=value,
            unit=parameter.unit,
        )

    @staticmethod
    def _failed(parameter: Parameter, error: FieldgateError) -> Reading:
        return Reading(
            parameter_id=parameter.id,
            name=parameter.name,
            address=parameter.address,
            value=None,
            unit=parameter.unit,
            error=f"{error.kind}: {error.message}",
        )

    # -- writes ---------------------------------------------------------------

    async def write_parameter(self, parameter_id: str, value: int | float | bool) -> list[int]:
        """
        Write one configured parameter.

        Returns the register words (or coil bit) written.

        Raises:
            DisabledDeviceError: device disabled, no I/O performed
            ConfigurationError: unknown or read-only parameter
            EncodeError, DeviceConnectionError, ProtocolError: write failed
        """
        self._check_enabled()
        parameter = self._parameters.get(parameter_id) or self.find_parameter(parameter_id)
        if parameter is None:
            raise ConfigurationError(
                f"Unknown parameter {parameter_id!r} on device {self.name}", field="name"
            )
        if not parameter.register_class.writable:
            raise ConfigurationError(
                f"Parameter {parameter.name} is a read-only {parameter.register_class.value}",
                field="registerClass",
            )

        if parameter.register_class == RegisterClass.COIL:
            bit = bool(value)
            async with self._lock:
                self._check_enabled()
                await self._logged_write(
                    parameter.name, value, self.transport.write_coil(parameter.address, bit)
                )
            return [1 if bit else 0]

        words = codec.encode(
            value, parameter.data_type, parameter.byte_order, parameter.scaling_factor
        )
        async with self._lock:
            self._check_enabled()
            await self._logged_write(
                parameter.name, value, self.transport.write_registers(parameter.address, words)
            )
        return words

    async def write_value(
        self,
        address: int,
        value: int | float,
        data_type: DataType | str,
        byte_order: ByteOrder | str | None = None,
        scaling_factor: float = 1.0,
        name: str | None = None,
    ) -> list[int]:
        """Encode and write an ad-hoc holding register value"""
        self._check_enabled()
        words = codec.encode(value, data_type, byte_order, scaling_factor)
        async with self._lock:
            self._check_enabled()
            await self._logged_write(
                name or str(address), value, self.transport.write_registers(address, words)
            )
        return words

    def _check_enabled(self) -> None:
        if not self.enabled:
            raise DisabledDeviceError(self.id, self.name)

    async def _logged_write(self, name: str, value: Any, call) -> None:
        try:
            await self._transport_call(call)
        except FieldgateError as e:
            log_device_write(logger, self.name, name, value, success=False, error=e.message)
            raise
        log_device_write(logger, self.name, name, value)

    # -- instrumentation ------------------------------------------------------

    async def _transport_call(self, call) -> Any:
        self.stats.request_count += 1
        self.stats.last_request_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            result = await call
        except FieldgateError as e:
            self.stats.error_count += 1
            self.stats.last_error = e.message
            raise
        self.stats.success_count += 1
        self.stats.total_response_ms += (time.monotonic() - started) * 1000
        self.stats.last_success_at = datetime.now(timezone.utc)
        return result

    def get_info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "enabled": self.enabled,
            "endpoint": self.transport.label,
            "connected": self.transport.is_connected,
            "parameter_count": len(self._parameters),
            "stats": self.stats.to_dict(),
        }
