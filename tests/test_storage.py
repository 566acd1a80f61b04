"""
Tests for the realtime cache, the history sink and the config stores.
"""

import json

import pytest

from fieldgate.common.exceptions import ConfigurationError
from fieldgate.services.cache.realtime import RealtimeCache
from fieldgate.services.device.device import Reading
from fieldgate.services.polling.events import ErrorEvent, PollEvent
from fieldgate.storage.config_store import FileConfigStore, MemoryConfigStore
from fieldgate.storage.history import HistoryWriter, SqliteHistorySink, history_records


def reading(name, value, error=None, unit=""):
    return Reading(parameter_id=name, name=name, address=0, value=value, unit=unit, error=error)


def poll(device_id="d1", *readings):
    return PollEvent(device_id=device_id, device_name=device_id.upper(), readings=list(readings))


class TestRealtimeCache:
    """Last-known readings with TTL"""

    def test_put_and_get(self):
        cache = RealtimeCache()
        cache.handle_event(poll("d1", reading("Power", 12.5)))
        snapshot = cache.get("d1")
        assert snapshot.value("Power") == 12.5
        assert snapshot.to_dict()["deviceName"] == "D1"

    def test_stale_snapshot_is_a_miss(self):
        cache = RealtimeCache(ttl_s=60)
        cache.put(poll("d1", reading("Power", 1)))
        cache.get("d1").updated_at -= 120
        assert cache.get("d1") is None
        assert cache.get_stats()["misses"] == 1

    def test_max_age_overrides_ttl(self):
        cache = RealtimeCache(ttl_s=60)
        cache.put(poll("d1", reading("Power", 1)))
        cache.get("d1").updated_at -= 10
        assert cache.get("d1", max_age_s=5) is None
        assert cache.get("d1", max_age_s=30) is not None

    def test_failed_reading_keeps_good_value(self):
        cache = RealtimeCache()
        cache.put(poll("d1", reading("Power", 12.5)))
        cache.put(poll("d1", reading("Power", None, error="ConnectionError: refused")))
        assert cache.get("d1").value("Power") == 12.5

    def test_failed_poll_does_not_refresh_age(self):
        cache = RealtimeCache(ttl_s=60)
        cache.put(poll("d1", reading("Power", 42)))
        snapshot = cache.get("d1")
        snapshot.updated_at -= 120
        seen_at = snapshot.timestamp
        assert cache.get("d1") is None

        failed = poll("d1", reading("Power", None, error="TimeoutError: no answer"))
        cache.put(failed)
        assert cache.get("d1") is None
        assert snapshot.timestamp == seen_at
        assert snapshot.age_s > 60

        cache.put(poll("d1", reading("Power", 43)))
        assert cache.get("d1").value("Power") == 43

    def test_all_failed_first_event_is_not_fresh(self):
        cache = RealtimeCache()
        cache.put(poll("d1", reading("Power", None, error="ConnectionError: refused")))
        assert cache.get("d1") is None

    def test_partial_event_merges(self):
        cache = RealtimeCache()
        cache.put(poll("d1", reading("Power", 1), reading("Energy", 2)))
        cache.put(poll("d1", reading("Power", 3)))
        snapshot = cache.get("d1")
        assert snapshot.value("Power") == 3
        assert snapshot.value("Energy") == 2

    def test_update_value_without_snapshot_is_noop(self):
        cache = RealtimeCache()
        cache.update_value("d1", "Setpoint", 20)
        assert cache.get("d1") is None

    def test_update_value_keeps_unit(self):
        cache = RealtimeCache()
        cache.put(poll("d1", reading("Setpoint", 20, unit="C")))
        cache.update_value("d1", "Setpoint", 22)
        updated = cache.get("d1").readings["Setpoint"]
        assert updated.value == 22
        assert updated.unit == "C"

    def test_error_events_ignored(self):
        cache = RealtimeCache()
        cache.handle_event(ErrorEvent(device_id="d1", device_name="D1", error="down"))
        assert cache.get("d1") is None

    def test_invalidate(self):
        cache = RealtimeCache()
        cache.put(poll("d1", reading("Power", 1)))
        cache.invalidate("d1")
        assert cache.get("d1") is None


class TestHistory:
    """SQLite-backed series"""

    def test_records_carry_quality(self):
        records = history_records(poll("d1", reading("Power", 1), reading("Energy", None, error="x")))
        assert [r.quality for r in records] == ["good", "bad"]

    async def test_writer_appends_rows(self, tmp_path):
        sink = SqliteHistorySink(str(tmp_path / "history.db"))
        writer = HistoryWriter(sink)

        await writer.handle_event(poll("d1", reading("Power", 1.5), reading("Energy", 10)))
        await writer.handle_event(poll("d2", reading("Power", 2.0)))
        await writer.handle_event(ErrorEvent(device_id="d1", device_name="D1", error="down"))

        assert writer.written == 3
        assert sink.count() == 3
        assert sink.count("d1") == 2

    async def test_empty_event_writes_nothing(self, tmp_path):
        sink = SqliteHistorySink(str(tmp_path / "history.db"))
        await HistoryWriter(sink).handle_event(poll("d1"))
        assert sink.count() == 0


RECORD = {
    "id": "meter-1",
    "name": "Main Meter",
    "ip": "192.168.1.30",
    "registers": [{"name": "Power", "address": 10, "length": 1}],
}


class TestConfigStores:
    """Memory and file backed device records"""

    async def test_enabled_only(self):
        store = MemoryConfigStore([RECORD, {**RECORD, "id": "off", "enabled": False}])
        assert [d.id for d in await store.list_devices()] == ["meter-1"]
        assert len(await store.list_devices(enabled_only=False)) == 2

    async def test_invalid_record_skipped(self):
        store = MemoryConfigStore([RECORD, {"id": "broken"}])
        assert [d.id for d in await store.list_devices()] == ["meter-1"]

    @pytest.mark.parametrize("bad", [
        {"id": "bad-port", "connectionSetting": {"tcp": {"ip": "h", "port": "abc"}}},
        {"id": "bad-baud", "connectionSetting": {
            "connectionType": "rtu", "rtu": {"serialPort": "/dev/ttyS0", "baudRate": "fast"},
        }},
        {"id": "bad-range", "ip": "h", "dataPoints": [{"range": {"startAddress": "x"}}]},
        {"id": "bad-timeout", "ip": "h", "timeout": "soon"},
        "not a record",
    ])
    async def test_non_numeric_fields_skip_only_that_record(self, bad):
        store = MemoryConfigStore([bad, RECORD])
        assert [d.id for d in await store.list_devices()] == ["meter-1"]

    async def test_get_device(self):
        store = MemoryConfigStore([RECORD])
        assert (await store.get_device("meter-1")).name == "Main Meter"
        assert await store.get_device("ghost") is None

    async def test_add_replaces_same_id(self):
        store = MemoryConfigStore([RECORD])
        store.add({**RECORD, "name": "Renamed"})
        devices = await store.list_devices()
        assert [d.name for d in devices] == ["Renamed"]

    async def test_yaml_file(self, tmp_path):
        path = tmp_path / "devices.yaml"
        path.write_text(
            "devices:\n"
            "  - id: meter-1\n"
            "    name: Main Meter\n"
            "    connectionSetting:\n"
            "      connectionType: tcp\n"
            "      tcp: {ip: 192.168.1.30, port: 502, slaveId: 1}\n"
        )
        devices = await FileConfigStore(path).list_devices()
        assert devices[0].connection.host == "192.168.1.30"

    async def test_json_list_file(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text(json.dumps([RECORD]))
        devices = await FileConfigStore(path).list_devices()
        assert devices[0].parameters[0].address == 10

    async def test_missing_file(self, tmp_path):
        assert await FileConfigStore(tmp_path / "none.yaml").list_devices() == []

    async def test_malformed_file(self, tmp_path):
        path = tmp_path / "devices.yaml"
        path.write_text("devices: 5\n")
        with pytest.raises(ConfigurationError):
            await FileConfigStore(path).list_devices()
