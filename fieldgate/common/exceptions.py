"""
Custom Exception Classes for the Fieldgate gateway

Hierarchical exception structure for error handling across services.
Every error carries a stable ``kind`` tag so callers can branch on it
and a human-readable message for operators.
"""

from typing import Any


# Standard Modbus exception codes reported by slave devices
MODBUS_EXCEPTION_NAMES = {
    1: "Illegal Function",
    2: "Illegal Data Address",
    3: "Illegal Data Value",
    4: "Server Device Failure",
    5: "Acknowledge",
    6: "Server Device Busy",
    7: "Negative Acknowledge",
    8: "Memory Parity Error",
    10: "Gateway Path Unavailable",
    11: "Gateway Target Device Failed to Respond",
}


class FieldgateError(Exception):
    """Base exception for all gateway errors"""

    kind = "FieldgateError"

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ConfigurationError(FieldgateError):
    """Missing or invalid device/parameter definition"""

    kind = "ConfigurationError"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message, recoverable=False)


class DeviceError(FieldgateError):
    """Errors tied to a single device"""

    kind = "DeviceError"

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        device_name: str | None = None,
        recoverable: bool = True,
    ):
        self.device_id = device_id
        self.device_name = device_name
        super().__init__(message, recoverable)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.device_id is not None:
            data["device_id"] = self.device_id
        return data


class DeviceConnectionError(DeviceError):
    """Connect failure, dropped link or busy serial port"""

    kind = "ConnectionError"

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        device_name: str | None = None,
        host: str | None = None,
        port: int | str | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, device_id, device_name, recoverable=True)


class DeviceTimeoutError(DeviceConnectionError):
    """A transport call did not complete within its timeout"""

    kind = "TimeoutError"


class ProtocolError(DeviceError):
    """Device answered with a Modbus exception response"""

    kind = "ProtocolError"

    def __init__(
        self,
        message: str,
        exception_code: int | None = None,
        device_id: str | None = None,
        device_name: str | None = None,
    ):
        self.exception_code = exception_code
        super().__init__(message, device_id, device_name, recoverable=True)

    @staticmethod
    def exception_name(code: int) -> str:
        return MODBUS_EXCEPTION_NAMES.get(code, f"Unknown Exception Code: {code}")

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        if self.exception_code is not None:
            data["exception_code"] = self.exception_code
        return data


class DecodeError(FieldgateError):
    """Malformed or short register buffer for the configured data type"""

    kind = "DecodeError"


class EncodeError(FieldgateError):
    """Value cannot be represented in the configured data type"""

    kind = "EncodeError"


class DisabledDeviceError(DeviceError):
    """Write attempted on a disabled device"""

    kind = "DisabledDeviceError"

    def __init__(self, device_id: str, device_name: str | None = None):
        super().__init__(
            f"Device {device_name or device_id} is disabled",
            device_id=device_id,
            device_name=device_name,
            recoverable=False,
        )


class DeviceNotFoundError(DeviceError):
    """No device registered under the requested id"""

    kind = "DeviceNotFoundError"

    def __init__(self, device_id: str):
        super().__init__(
            f"Device {device_id} not found",
            device_id=device_id,
            recoverable=False,
        )


class ScheduleConflictError(DeviceError):
    """Manual write rejected because an automated schedule controls the device"""

    kind = "ScheduleConflictError"

    def __init__(self, device_id: str, device_name: str | None = None):
        super().__init__(
            "Cannot modify setpoint while schedule is active. "
            "Disable schedule first to make manual changes.",
            device_id=device_id,
            device_name=device_name,
            recoverable=False,
        )


def failure_payload(error: BaseException, **extra: Any) -> dict[str, Any]:
    """
    Build the structured failure returned by every control-surface call.

    Unknown exceptions are reported as ``InternalError`` so nothing
    escapes to the request layer uncaught.
    """
    if isinstance(error, FieldgateError):
        detail = error.to_dict()
    else:
        detail = {"kind": "InternalError", "message": str(error) or type(error).__name__}

    payload = {
        "success": False,
        "message": detail["message"],
        "error": detail,
    }
    payload.update(extra)
    return payload
