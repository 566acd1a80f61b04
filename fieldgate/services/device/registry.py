"""
Device Registry

Holds exactly one live Device per configuration id. Registering an id
again replaces the previous instance and closes its connection.
"""

from fieldgate.common.config import DeviceConfig
from fieldgate.common.exceptions import DeviceNotFoundError
from fieldgate.common.logging_setup import get_service_logger
from .connection_manager import ConnectionManager
from .device import Device

logger = get_service_logger("device.registry")


class DeviceRegistry:
    """Registered devices keyed by id"""

    def __init__(self, connections: ConnectionManager | None = None):
        self.connections = connections or ConnectionManager()
        self._devices: dict[str, Device] = {}

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    async def create_device(self, config: DeviceConfig) -> Device:
        """Build a device with a fresh transport and register it"""
        previous = self._devices.get(config.id)
        if previous is not None:
            # Let in-flight I/O on the old instance finish first
            await previous.close()
        transport = await self.connections.open_transport(config)
        device = Device(config, transport)
        await self.register(device)
        return device

    async def register(self, device: Device) -> str:
        """
        Register ``device``, replacing any instance with the same id.

        Returns the device id.
        """
        previous = self._devices.get(device.id)
        self._devices[device.id] = device

        if previous is not None and previous is not device:
            logger.info(f"Replacing device {device.name} ({device.id})")
            await previous.close()
            if previous.transport is not device.transport:
                await self.connections.release(device.id, previous.transport)
        else:
            logger.info(f"Registered device {device.name} ({device.id})")
        return device.id

    def get(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def require(self, device_id: str) -> Device:
        """Get a device or raise DeviceNotFoundError"""
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(device_id)
        return device

    def ids(self) -> list[str]:
        return list(self._devices)

    def devices(self) -> list[Device]:
        return list(self._devices.values())

    async def unregister(self, device_id: str) -> bool:
        """
        Remove a device and close its connection.

        Unknown ids are a no-op and return False.
        """
        device = self._devices.pop(device_id, None)
        if device is None:
            return False
        await device.close()
        await self.connections.release(device_id, device.transport)
        logger.info(f"Unregistered device {device.name} ({device_id})")
        return True

    async def close_all(self) -> None:
        """Unregister every device"""
        for device_id in self.ids():
            await self.unregister(device_id)
        await self.connections.close_all()
