"""
Control / Setpoint Service

Validated manual writes with schedule precedence:

1. Schedule status is checked first; an active schedule rejects the
   request with ScheduleConflictError before any I/O.
2. Every parameter of a request is validated before any I/O for that
   device.
3. Each parameter is one write call (all-or-nothing per call).

Batch requests isolate failures per device.
"""

from dataclasses import dataclass
from typing import Any

from fieldgate.common.config import ByteOrder, DataType, check_byte_order
from fieldgate.common.exceptions import (
    ConfigurationError,
    FieldgateError,
    ScheduleConflictError,
    failure_payload,
)
from fieldgate.common.logging_setup import get_service_logger
from fieldgate.services.cache.realtime import RealtimeCache
from fieldgate.services.device.device import Device
from fieldgate.services.device.registry import DeviceRegistry
from .schedule import ScheduleStatusProvider

logger = get_service_logger("control")


@dataclass(frozen=True)
class WriteCommand:
    """A validated single-parameter write"""
    name: str
    value: int | float
    register_index: int
    data_type: DataType
    byte_order: ByteOrder
    scaling_factor: float = 1.0


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def validate_command(raw: dict[str, Any]) -> WriteCommand:
    """
    Validate one parameter write request.

    Requires name, value, registerIndex and dataType; byteOrder (optional)
    must fit the data type's word count.

    Raises:
        ConfigurationError: missing or invalid field
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Parameter must be an object, got {raw!r}", field="parameters")

    name = _pick(raw, "name")
    if not name or not isinstance(name, str):
        raise ConfigurationError("Parameter name is required", field="name")

    value = _pick(raw, "value")
    if value is None:
        raise ConfigurationError(f"Parameter {name}: value is required", field="value")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(
            f"Parameter {name}: value must be numeric, got {value!r}", field="value"
        )

    register_index = _pick(raw, "registerIndex", "register_index")
    if register_index is None:
        raise ConfigurationError(
            f"Parameter {name}: registerIndex is required", field="registerIndex"
        )
    if isinstance(register_index, bool) or not isinstance(register_index, int) or not 0 <= register_index <= 0xFFFF:
        raise ConfigurationError(
            f"Parameter {name}: invalid registerIndex {register_index!r}", field="registerIndex"
        )

    raw_type = _pick(raw, "dataType", "data_type")
    if not raw_type:
        raise ConfigurationError(f"Parameter {name}: dataType is required", field="dataType")
    data_type = DataType.parse(raw_type)

    raw_order = _pick(raw, "byteOrder", "byte_order")
    byte_order = (
        check_byte_order(data_type, raw_order)
        if raw_order
        else (ByteOrder.AB if data_type.word_count == 1 else ByteOrder.ABCD)
    )

    raw_scale = _pick(raw, "scalingFactor", "scaling_factor")
    if raw_scale is None:
        scaling_factor = 1.0
    elif isinstance(raw_scale, bool) or not isinstance(raw_scale, (int, float)):
        raise ConfigurationError(
            f"Parameter {name}: scalingFactor must be numeric, got {raw_scale!r}",
            field="scalingFactor",
        )
    else:
        scaling_factor = float(raw_scale)
    if not scaling_factor > 0:
        raise ConfigurationError(
            f"Parameter {name}: scalingFactor must be > 0", field="scalingFactor"
        )

    return WriteCommand(
        name=name,
        value=value,
        register_index=register_index,
        data_type=data_type,
        byte_order=byte_order,
        scaling_factor=scaling_factor,
    )


class ControlService:
    """
    Setpoint writes against registered devices.

    Usage:
        control = ControlService(registry, schedule, cache)
        await control.set_parameter("chiller-1", "Setpoint", 21.5, "float32", 200)
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        schedule: ScheduleStatusProvider,
        cache: RealtimeCache | None = None,
    ):
        self._registry = registry
        self._schedule = schedule
        self._cache = cache

    async def check_schedule_status(self, device_id: str) -> bool:
        """
        True when an automated schedule governs the device.

        A failing schedule lookup is logged and treated as not active.
        """
        try:
            return bool(await self._schedule.is_schedule_active(device_id))
        except Exception as e:
            logger.warning(
                f"Error checking schedule status for {device_id}: {e}",
                extra={"device_id": device_id},
            )
            return False

    async def _ensure_manual_control(self, device: Device) -> None:
        if await self.check_schedule_status(device.id):
            logger.info(
                f"Rejecting setpoint change for {device.name}: schedule active",
                extra={"device_id": device.id},
            )
            raise ScheduleConflictError(device.id, device.name)

    async def set_parameter(
        self,
        device_id: str,
        name: str,
        value: int | float,
        data_type: DataType | str,
        register_index: int,
        byte_order: ByteOrder | str | None = None,
        scaling_factor: float = 1.0,
    ) -> dict[str, Any]:
        """
        Write a single parameter.

        Raises:
            DeviceNotFoundError, ScheduleConflictError, ConfigurationError,
            DisabledDeviceError, EncodeError, DeviceConnectionError, ProtocolError
        """
        device = self._registry.require(device_id)
        await self._ensure_manual_control(device)

        command = validate_command({
            "name": name,
            "value": value,
            "registerIndex": register_index,
            "dataType": data_type.value if isinstance(data_type, DataType) else data_type,
            "byteOrder": byte_order.value if isinstance(byte_order, ByteOrder) else byte_order,
            "scalingFactor": scaling_factor,
        })
        words = await self._write(device, command)
        return {
            "device_id": device.id,
            "device_name": device.name,
            "parameter": command.name,
            "value": command.value,
            "register_index": command.register_index,
            "registers": words,
        }

    async def control_device(self, device_id: str, parameters: list[dict[str, Any]]) -> dict[str, Any]:
        """
        Write a list of parameters to one device.

        The whole list is validated before the first write. Each write
        then succeeds or fails on its own; results are per parameter.
        """
        device = self._registry.require(device_id)
        await self._ensure_manual_control(device)

        if not parameters:
            raise ConfigurationError("No parameters provided", field="parameters")
        commands = [validate_command(raw) for raw in parameters]

        results = []
        for command in commands:
            try:
                words = await self._write(device, command)
            except FieldgateError as e:
                results.append({
                    "name": command.name,
                    "success": False,
                    "value": command.value,
                    "error": e.to_dict(),
                })
                continue
            results.append({
                "name": command.name,
                "success": True,
                "value": command.value,
                "registers": words,
            })

        return {
            "device_id": device.id,
            "device_name": device.name,
            "success": all(r["success"] for r in results),
            "results": results,
        }

    async def batch_control(self, commands: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Apply control commands across devices.

        Each command is ``{"deviceId": ..., "parameters": [...]}``. A failure
        for one device never prevents processing of the others.
        """
        results = []
        for command in commands:
            device_id = ""
            try:
                if not isinstance(command, dict):
                    raise ConfigurationError(
                        f"Command must be an object, got {command!r}", field="commands"
                    )
                device_id = str(_pick(command, "deviceId", "device_id") or "")
                if not device_id:
                    raise ConfigurationError("Command has no deviceId", field="deviceId")
                parameters = command.get("parameters")
                if not isinstance(parameters, list):
                    raise ConfigurationError(
                        f"Command for {device_id} has no parameter list", field="parameters"
                    )
                results.append(await self.control_device(device_id, parameters))
            except Exception as e:
                logger.warning(
                    f"Batch command for {device_id or '?'} failed: {e}",
                    extra={"device_id": device_id},
                )
                results.append(failure_payload(e, device_id=device_id))
        return results

    async def _write(self, device: Device, command: WriteCommand) -> list[int]:
        words = await device.write_value(
            command.register_index,
            command.value,
            command.data_type,
            command.byte_order,
            command.scaling_factor,
            name=command.name,
        )
        if self._cache is not None:
            self._cache.update_value(
                device.id, command.name, command.value, address=command.register_index
            )
        return words
