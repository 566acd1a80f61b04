"""
Configuration Dataclasses

Type-safe configuration structures for the gateway.
Device records arrive from the external configuration store as plain
dicts and are parsed here into immutable dataclasses.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Union

import yaml

from .exceptions import ConfigurationError
from .logging_setup import get_service_logger

logger = get_service_logger("config")


class RegisterClass(str, Enum):
    """Modbus register classes, selected by read function code"""
    COIL = "coil"
    DISCRETE_INPUT = "discrete_input"
    HOLDING_REGISTER = "holding_register"
    INPUT_REGISTER = "input_register"

    @property
    def function_code(self) -> int:
        return _FUNCTION_CODES[self]

    @property
    def is_bit(self) -> bool:
        return self in (RegisterClass.COIL, RegisterClass.DISCRETE_INPUT)

    @property
    def writable(self) -> bool:
        return self in (RegisterClass.COIL, RegisterClass.HOLDING_REGISTER)

    @classmethod
    def from_function_code(cls, code: int) -> "RegisterClass":
        for register_class, fc in _FUNCTION_CODES.items():
            if fc == code:
                return register_class
        raise ConfigurationError(
            f"Unsupported read function code: {code}", field="functionCode"
        )


_FUNCTION_CODES = {
    RegisterClass.COIL: 1,
    RegisterClass.DISCRETE_INPUT: 2,
    RegisterClass.HOLDING_REGISTER: 3,
    RegisterClass.INPUT_REGISTER: 4,
}


class DataType(str, Enum):
    """Supported register data types"""
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    FLOAT32 = "float32"

    @property
    def word_count(self) -> int:
        return 1 if self in (DataType.INT16, DataType.UINT16) else 2

    @classmethod
    def parse(cls, value: Any) -> "DataType":
        if isinstance(value, DataType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"Unsupported data type: {value!r}", field="dataType"
            ) from None


class ByteOrder(str, Enum):
    """Byte/word arrangement of a register value"""
    # Single register (16-bit)
    AB = "AB"
    BA = "BA"
    # Double register (32-bit)
    ABCD = "ABCD"
    CDAB = "CDAB"
    BADC = "BADC"
    DCBA = "DCBA"

    @classmethod
    def parse(cls, value: Any) -> "ByteOrder":
        if isinstance(value, ByteOrder):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise ConfigurationError(
                f"Unsupported byte order: {value!r}", field="byteOrder"
            ) from None


SINGLE_WORD_ORDERS = (ByteOrder.AB, ByteOrder.BA)
DOUBLE_WORD_ORDERS = (ByteOrder.ABCD, ByteOrder.CDAB, ByteOrder.BADC, ByteOrder.DCBA)


def byte_orders_for(data_type: DataType) -> tuple[ByteOrder, ...]:
    """Valid byte orders for a data type's word count"""
    return SINGLE_WORD_ORDERS if data_type.word_count == 1 else DOUBLE_WORD_ORDERS


def check_byte_order(data_type: DataType, byte_order: Any) -> ByteOrder:
    """Parse a byte order and reject it if it does not fit the data type"""
    order = ByteOrder.parse(byte_order)
    valid = byte_orders_for(data_type)
    if order not in valid:
        raise ConfigurationError(
            f"Byte order {order.value} is not valid for {data_type.value}; "
            f"expected one of {', '.join(o.value for o in valid)}",
            field="byteOrder",
        )
    return order


class ConnectionType(str, Enum):
    """Physical link types"""
    TCP = "tcp"
    RTU = "rtu"


# =============================================================================
# Parameters: one variant per data type
# =============================================================================

@dataclass(frozen=True)
class _ParameterBase:
    """Fields shared by every parameter variant"""
    id: str
    name: str
    address: int
    register_class: RegisterClass = RegisterClass.HOLDING_REGISTER
    byte_order: ByteOrder | None = None
    scaling_factor: float = 1.0
    decimal_point: int = 0
    unit: str = ""

    data_type: ClassVar[DataType]

    def __post_init__(self):
        register_class = self.register_class
        if not isinstance(register_class, RegisterClass):
            try:
                register_class = RegisterClass(register_class)
            except ValueError:
                raise ConfigurationError(
                    f"Unknown register class {register_class!r} for {self.name}",
                    field="registerClass",
                ) from None
            object.__setattr__(self, "register_class", register_class)

        if self.byte_order is None:
            object.__setattr__(self, "byte_order", byte_orders_for(self.data_type)[0])
        else:
            object.__setattr__(
                self, "byte_order", check_byte_order(self.data_type, self.byte_order)
            )

        if not 0 <= self.address <= 0xFFFF:
            raise ConfigurationError(
                f"Address {self.address} out of range for {self.name}", field="address"
            )
        if self.scaling_factor <= 0:
            raise ConfigurationError(
                f"Scaling factor must be > 0 for {self.name}", field="scalingFactor"
            )
        if self.decimal_point < 0:
            raise ConfigurationError(
                f"Decimal point must be >= 0 for {self.name}", field="decimalPoint"
            )
        if register_class.is_bit and self.word_count != 1:
            raise ConfigurationError(
                f"{self.data_type.value} cannot be read from a {register_class.value}",
                field="dataType",
            )

    @property
    def word_count(self) -> int:
        return self.data_type.word_count

    @property
    def function_code(self) -> int:
        return self.register_class.function_code

    @property
    def end_address(self) -> int:
        """First address after this parameter"""
        return self.address + self.word_count


@dataclass(frozen=True)
class Int16Parameter(_ParameterBase):
    data_type: ClassVar[DataType] = DataType.INT16


@dataclass(frozen=True)
class UInt16Parameter(_ParameterBase):
    data_type: ClassVar[DataType] = DataType.UINT16


@dataclass(frozen=True)
class Int32Parameter(_ParameterBase):
    data_type: ClassVar[DataType] = DataType.INT32


@dataclass(frozen=True)
class UInt32Parameter(_ParameterBase):
    data_type: ClassVar[DataType] = DataType.UINT32


@dataclass(frozen=True)
class Float32Parameter(_ParameterBase):
    data_type: ClassVar[DataType] = DataType.FLOAT32


Parameter = Union[
    Int16Parameter,
    UInt16Parameter,
    Int32Parameter,
    UInt32Parameter,
    Float32Parameter,
]

PARAMETER_TYPES: dict[DataType, type] = {
    DataType.INT16: Int16Parameter,
    DataType.UINT16: UInt16Parameter,
    DataType.INT32: Int32Parameter,
    DataType.UINT32: UInt32Parameter,
    DataType.FLOAT32: Float32Parameter,
}


def make_parameter(data_type: DataType | str, **fields: Any) -> Parameter:
    """Build the parameter variant matching ``data_type``"""
    return PARAMETER_TYPES[DataType.parse(data_type)](**fields)


# =============================================================================
# Connections and devices
# =============================================================================

@dataclass(frozen=True)
class NetworkConnection:
    """Modbus TCP (or RTU-over-TCP gateway) settings"""
    host: str
    port: int = 502
    unit_id: int = 1

    type: ClassVar[ConnectionType] = ConnectionType.TCP

    @property
    def label(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class SerialConnection:
    """Modbus RTU serial settings"""
    port: str
    baud_rate: int = 9600
    data_bits: int = 8
    stop_bits: int = 1
    parity: str = "N"
    unit_id: int = 1

    type: ClassVar[ConnectionType] = ConnectionType.RTU

    @property
    def label(self) -> str:
        return self.port


ConnectionSettings = Union[NetworkConnection, SerialConnection]


@dataclass
class DeviceConfig:
    """Device configuration"""
    id: str
    name: str
    connection: ConnectionSettings
    enabled: bool = True
    parameters: list[Parameter] = field(default_factory=list)
    timeout_s: float | None = None


@dataclass
class GatewaySettings:
    """Gateway runtime configuration"""
    network_timeout_s: float = 3.0
    serial_timeout_s: float = 3.0
    serial_acquire_timeout_s: float = 0.0
    monitoring_interval_ms: int = 10000
    snapshot_interval_s: float = 300.0
    cache_ttl_s: float = 60.0
    event_queue_size: int = 100
    health_host: str = "127.0.0.1"
    health_port: int = 8083
    devices_file: str = "devices.yaml"
    history_db: str | None = None
    auto_start_monitoring: bool = True
    log_level: str = "INFO"


# =============================================================================
# Record parsing
# =============================================================================

_PARITY_ALIASES = {
    "n": "N", "none": "N",
    "e": "E", "even": "E",
    "o": "O", "odd": "O",
    "m": "M", "mark": "M",
    "s": "S", "space": "S",
}


def _first(data: dict, *keys: str, default: Any = None) -> Any:
    """First present, non-empty value among ``keys``"""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return default


def _number(value: Any, convert: type, field: str, owner: str, default: Any = None) -> Any:
    """
    Convert a numeric record field.

    None or "" yields ``default``; anything that does not convert raises
    ConfigurationError naming the field.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"{owner}: {field} must be a number, got {value!r}", field=field)
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"{owner}: {field} must be a number, got {value!r}", field=field
        ) from None


def parse_connection(record: dict) -> ConnectionSettings:
    """
    Parse connection settings from a device record.

    Accepts the nested ``connectionSetting`` form (``tcp`` / ``rtu`` blocks)
    and the older flat fields on the record itself.
    """
    setting = record.get("connectionSetting") or {}
    connection_type = str(
        _first(setting, "connectionType", "type")
        or _first(record, "connectionType", default="tcp")
    ).lower()
    owner = f"Device {record.get('name', '?')}"

    def number(block: dict, field: str, *keys: str, default: int) -> int:
        value = _first(block, *keys)
        if value is None:
            value = _first(record, *keys, default=default)
        return _number(value, int, field, owner, default)

    if connection_type in ("tcp", "network"):
        tcp = setting.get("tcp") or setting.get("network") or {}
        host = _first(tcp, "host", "ip") or _first(record, "host", "ip")
        if not host:
            raise ConfigurationError(f"{owner} has no network host", field="host")
        return NetworkConnection(
            host=str(host),
            port=number(tcp, "port", "port", default=502),
            unit_id=number(tcp, "unitId", "unitId", "slaveId", default=1),
        )

    if connection_type in ("rtu", "serial"):
        rtu = setting.get("rtu") or setting.get("serial") or {}
        port = _first(rtu, "port", "serialPort", "path") or _first(record, "serialPort")
        if not port:
            raise ConfigurationError(f"{owner} has no serial port", field="serialPort")
        parity = str(_first(rtu, "parity") or _first(record, "parity", default="N"))
        return SerialConnection(
            port=str(port),
            baud_rate=number(rtu, "baudRate", "baudRate", default=9600),
            data_bits=number(rtu, "dataBits", "dataBits", default=8),
            stop_bits=number(rtu, "stopBits", "stopBits", default=1),
            parity=_PARITY_ALIASES.get(parity.lower(), parity.upper()),
            unit_id=number(rtu, "unitId", "unitId", "slaveId", default=1),
        )

    raise ConfigurationError(
        f"Unknown connection type {connection_type!r}", field="connectionType"
    )


def _resolve_address(register_index: int, start: int, count: int, name: str) -> int:
    """Absolute when inside the range, otherwise relative to its start"""
    if start <= register_index < start + count:
        return register_index
    if 0 <= register_index < count:
        return start + register_index
    raise ConfigurationError(
        f"Parameter {name} register index {register_index} is outside "
        f"range {start}..{start + count - 1}",
        field="registerIndex",
    )


def _parse_range_parameter(
    raw: dict, start: int, count: int, register_class: RegisterClass
) -> Parameter:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Parameter must be an object, got {raw!r}", field="parameters")
    name = raw.get("name")
    if not name:
        raise ConfigurationError("Parameter without a name", field="name")
    owner = f"Parameter {name}"
    if not raw.get("dataType"):
        raise ConfigurationError(f"{owner} has no dataType", field="dataType")
    register_index = _number(raw.get("registerIndex"), int, "registerIndex", owner)
    if register_index is None:
        raise ConfigurationError(f"{owner} has no registerIndex", field="registerIndex")

    return make_parameter(
        raw["dataType"],
        id=str(raw.get("id") or name),
        name=name,
        address=_resolve_address(register_index, start, count, name),
        register_class=register_class,
        byte_order=raw.get("byteOrder"),
        scaling_factor=_number(raw.get("scalingFactor"), float, "scalingFactor", owner, 1.0),
        decimal_point=_number(raw.get("decimalPoint"), int, "decimalPoint", owner, 0),
        unit=raw.get("unit") or "",
    )


def _parse_legacy_register(raw: dict) -> Parameter:
    """Legacy flat register: holding register, one parameter per entry"""
    if not isinstance(raw, dict) or not raw.get("name") or raw.get("address") is None:
        raise ConfigurationError("Legacy register needs name and address", field="registers")
    name = raw["name"]
    owner = f"Register {name}"

    length = _number(raw.get("length"), int, "length", owner, 1)
    default_type = DataType.UINT16 if length <= 1 else DataType.UINT32
    data_type = DataType.parse(raw["dataType"]) if raw.get("dataType") else default_type

    return make_parameter(
        data_type,
        id=str(raw.get("id") or name),
        name=name,
        address=_number(raw["address"], int, "address", owner),
        register_class=RegisterClass.HOLDING_REGISTER,
        byte_order=raw.get("byteOrder"),
        scaling_factor=_number(raw.get("scaleFactor"), float, "scaleFactor", owner, 1.0),
        decimal_point=_number(raw.get("decimalPoint"), int, "decimalPoint", owner, 0),
        unit=raw.get("unit") or "",
    )


def _parse_data_point(data_point: dict, device_name: str) -> list[Parameter]:
    if not isinstance(data_point, dict):
        raise ConfigurationError(
            f"Data point must be an object, got {data_point!r}", field="dataPoints"
        )
    range_data = data_point.get("range") or {}
    if "startAddress" not in range_data:
        raise ConfigurationError("Data point range has no startAddress", field="range")

    owner = f"Device {device_name} range"
    start = _number(range_data["startAddress"], int, "startAddress", owner)
    count = _number(range_data.get("count"), int, "count", owner, 1)
    function_code = _number(
        _first(range_data, "functionCode", "fc"), int, "functionCode", owner, 3
    )
    register_class = RegisterClass.from_function_code(function_code)

    return _keep_valid(
        device_name,
        lambda raw: _parse_range_parameter(raw, start, count, register_class),
        (data_point.get("parser") or {}).get("parameters") or [],
    )


def _keep_valid(device_name: str, parse, raws: list) -> list[Parameter]:
    """Parse each raw parameter, logging and skipping the ones that are invalid"""
    parameters = []
    for raw in raws:
        try:
            parameters.append(parse(raw))
        except ConfigurationError as e:
            logger.warning(
                f"Device {device_name}: skipping parameter: {e.message}",
                extra={"device": device_name, "field": e.field},
            )
    return parameters


def parse_device_record(record: dict) -> DeviceConfig:
    """
    Parse a device record from the configuration store.

    Both the ``dataPoints`` form and the legacy flat ``registers`` form are
    accepted. An invalid parameter is logged and left out; an invalid id,
    connection or data point range raises ConfigurationError.
    """
    if not isinstance(record, dict):
        raise ConfigurationError(f"Device record must be an object, got {record!r}", field="id")
    device_id = _first(record, "id", "_id")
    if device_id is None:
        raise ConfigurationError("Device record has no id", field="id")
    name = record.get("name") or str(device_id)

    parameters: list[Parameter] = []
    if record.get("dataPoints"):
        for data_point in record["dataPoints"]:
            parameters.extend(_parse_data_point(data_point, name))
    else:
        parameters = _keep_valid(name, _parse_legacy_register, record.get("registers") or [])

    timeout_ms = _number(_first(record, "timeout", "timeoutMs"), float, "timeout", f"Device {name}")
    return DeviceConfig(
        id=str(device_id),
        name=name,
        connection=parse_connection(record),
        enabled=bool(record.get("enabled", True)),
        parameters=parameters,
        timeout_s=timeout_ms / 1000 if timeout_ms else None,
    )


def load_gateway_settings(path: str | Path | None = None) -> GatewaySettings:
    """
    Load gateway settings from a YAML file, then apply env overrides.

    A missing file yields defaults.
    """
    data: dict = {}
    if path is not None and Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

    gateway = data.get("gateway", data)
    settings = GatewaySettings(
        network_timeout_s=float(gateway.get("network_timeout_s", 3.0)),
        serial_timeout_s=float(gateway.get("serial_timeout_s", 3.0)),
        serial_acquire_timeout_s=float(gateway.get("serial_acquire_timeout_s", 0.0)),
        monitoring_interval_ms=int(gateway.get("monitoring_interval_ms", 10000)),
        snapshot_interval_s=float(gateway.get("snapshot_interval_s", 300.0)),
        cache_ttl_s=float(gateway.get("cache_ttl_s", 60.0)),
        event_queue_size=int(gateway.get("event_queue_size", 100)),
        health_host=gateway.get("health_host", "127.0.0.1"),
        health_port=int(gateway.get("health_port", 8083)),
        devices_file=gateway.get("devices_file", "devices.yaml"),
        history_db=gateway.get("history_db"),
        auto_start_monitoring=bool(gateway.get("auto_start_monitoring", True)),
        log_level=gateway.get("log_level", "INFO"),
    )

    if os.environ.get("FIELDGATE_HEALTH_PORT"):
        settings.health_port = int(os.environ["FIELDGATE_HEALTH_PORT"])
    if os.environ.get("FIELDGATE_DEVICES_FILE"):
        settings.devices_file = os.environ["FIELDGATE_DEVICES_FILE"]
    if os.environ.get("FIELDGATE_HISTORY_DB"):
        settings.history_db = os.environ["FIELDGATE_HISTORY_DB"]
    if os.environ.get("FIELDGATE_MONITOR_INTERVAL_MS"):
        settings.monitoring_interval_ms = int(os.environ["FIELDGATE_MONITOR_INTERVAL_MS"])

    return settings
