"""
Device Layer - Modbus Communication

Responsibilities:
- Own transports and serial-port leases (connection_manager)
- Convert register words to engineering values (codec)
- Read and write configured parameters per device (device)
- Hold one live device per configuration id (registry)
- Track device online/offline status (health)
"""

from .connection_manager import ConnectionManager, PortLease, SerialPortTable
from .device import Device, DeviceStats, Reading
from .health import DeviceHealth, HealthTracker
from .registry import DeviceRegistry
from .transport import ModbusTransport, NetworkTransport, SerialTransport

__all__ = [
    "ConnectionManager",
    "PortLease",
    "SerialPortTable",
    "Device",
    "DeviceStats",
    "Reading",
    "DeviceHealth",
    "HealthTracker",
    "DeviceRegistry",
    "ModbusTransport",
    "NetworkTransport",
    "SerialTransport",
]
