"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses and record parsing
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
- scheduler.py - Fixed-interval async loop
"""

from .config import (
    ByteOrder,
    ConnectionType,
    DataType,
    DeviceConfig,
    Float32Parameter,
    GatewaySettings,
    Int16Parameter,
    Int32Parameter,
    NetworkConnection,
    Parameter,
    RegisterClass,
    SerialConnection,
    UInt16Parameter,
    UInt32Parameter,
    load_gateway_settings,
    make_parameter,
    parse_device_record,
)
from .exceptions import (
    FieldgateError,
    ConfigurationError,
    DeviceError,
    DeviceConnectionError,
    DeviceTimeoutError,
    ProtocolError,
    DecodeError,
    EncodeError,
    DisabledDeviceError,
    DeviceNotFoundError,
    ScheduleConflictError,
    failure_payload,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    LogContext,
    log_device_read,
    log_device_write,
)
from .scheduler import ScheduledLoop

__all__ = [
    # Config
    "ByteOrder",
    "ConnectionType",
    "DataType",
    "DeviceConfig",
    "Float32Parameter",
    "GatewaySettings",
    "Int16Parameter",
    "Int32Parameter",
    "NetworkConnection",
    "Parameter",
    "RegisterClass",
    "SerialConnection",
    "UInt16Parameter",
    "UInt32Parameter",
    "load_gateway_settings",
    "make_parameter",
    "parse_device_record",
    # Exceptions
    "FieldgateError",
    "ConfigurationError",
    "DeviceError",
    "DeviceConnectionError",
    "DeviceTimeoutError",
    "ProtocolError",
    "DecodeError",
    "EncodeError",
    "DisabledDeviceError",
    "DeviceNotFoundError",
    "ScheduleConflictError",
    "failure_payload",
    # Logging
    "setup_logging",
    "get_service_logger",
    "LogContext",
    "log_device_read",
    "log_device_write",
    # Scheduling
    "ScheduledLoop",
]
