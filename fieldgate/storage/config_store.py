"""
Device Configuration Store

File-backed implementation of the device-record store. Records use the
same shape as the upstream management application: either ``dataPoints``
or the legacy flat ``registers`` list.

Example devices.yaml:

    devices:
      - id: meter-1
        name: Main Meter
        enabled: true
        connectionSetting:
          connectionType: tcp
          tcp: {ip: 192.168.1.30, port: 502, slaveId: 1}
        dataPoints:
          - range: {startAddress: 100, count: 2, functionCode: 3}
            parser:
              parameters:
                - {name: Temperature, dataType: FLOAT32, registerIndex: 100,
                   byteOrder: ABCD, scalingFactor: 10, decimalPoint: 1, unit: C}
"""

import json
from pathlib import Path
from typing import Any, Protocol

import yaml

from fieldgate.common.config import DeviceConfig, parse_device_record
from fieldgate.common.exceptions import ConfigurationError
from fieldgate.common.logging_setup import get_service_logger

logger = get_service_logger("storage.config")


class ConfigStore(Protocol):
    async def list_devices(self, enabled_only: bool = True) -> list[DeviceConfig]: ...

    async def get_device(self, device_id: str) -> DeviceConfig | None: ...


class MemoryConfigStore:
    """Config store over in-memory records"""

    def __init__(self, records: list[dict[str, Any]] | None = None):
        self._records: list[dict[str, Any]] = list(records or [])

    def add(self, record: dict[str, Any]) -> None:
        self._records = [r for r in self._records if str(r.get("id")) != str(record.get("id"))]
        self._records.append(record)

    def remove(self, device_id: str) -> None:
        self._records = [r for r in self._records if str(r.get("id")) != device_id]

    def _load_records(self) -> list[dict[str, Any]]:
        return self._records

    async def list_devices(self, enabled_only: bool = True) -> list[DeviceConfig]:
        """
        Parse every record. Invalid records are logged and skipped so one
        bad definition does not hide the rest of the fleet.
        """
        devices = []
        for record in self._load_records():
            try:
                device = parse_device_record(record)
            except ConfigurationError as e:
                record_id = record.get("id", "?") if isinstance(record, dict) else "?"
                logger.error(
                    f"Skipping invalid device record {record_id}: {e.message}",
                    extra={"field": e.field},
                )
                continue
            if enabled_only and not device.enabled:
                continue
            devices.append(device)
        return devices

    async def get_device(self, device_id: str) -> DeviceConfig | None:
        for record in self._load_records():
            if str(record.get("id")) == device_id:
                return parse_device_record(record)
        return None


class FileConfigStore(MemoryConfigStore):
    """
    Config store reading a YAML or JSON file on every query, so edits
    are picked up by the next device re-scan.
    """

    def __init__(self, path: str | Path):
        super().__init__()
        self.path = Path(path)

    def _load_records(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            logger.warning(f"Devices file not found: {self.path}")
            return []

        with open(self.path, "r", encoding="utf-8") as f:
            if self.path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)

        if data is None:
            return []
        if isinstance(data, dict):
            data = data.get("devices", [])
        if not isinstance(data, list):
            raise ConfigurationError(
                f"{self.path} must contain a list of devices", field="devices"
            )
        return data
