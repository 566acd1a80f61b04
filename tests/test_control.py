"""
Tests for setpoint control: schedule precedence, validation and
per-device batch isolation.
"""

import pytest

from fieldgate.common.config import ByteOrder, DataType
from fieldgate.common.exceptions import (
    ConfigurationError,
    DeviceNotFoundError,
    ScheduleConflictError,
)
from fieldgate.services.cache.realtime import RealtimeCache
from fieldgate.services.control.schedule import ReadingScheduleStatus, StaticScheduleStatus
from fieldgate.services.control.service import ControlService, validate_command
from fieldgate.services.device.device import Device, Reading
from fieldgate.services.polling.events import PollEvent

from conftest import InstrumentedTransport, make_device_config


@pytest.fixture
def schedule():
    return StaticScheduleStatus()


@pytest.fixture
def cache():
    return RealtimeCache()


@pytest.fixture
def control(registry, schedule, cache):
    return ControlService(registry, schedule, cache)


@pytest.fixture
async def chiller(registry):
    device = Device(make_device_config("chiller-1"), InstrumentedTransport(device_id="chiller-1"))
    await registry.register(device)
    return device


def setpoint(name="Setpoint", value=21.5, index=200, data_type="float32", **extra):
    return {"name": name, "value": value, "registerIndex": index, "dataType": data_type, **extra}


def poll_event(device_id, **values):
    return PollEvent(
        device_id=device_id,
        device_name=device_id,
        readings=[
            Reading(parameter_id=name, name=name, address=i, value=value)
            for i, (name, value) in enumerate(values.items())
        ],
    )


class TestValidateCommand:
    """Field validation"""

    def test_valid_command(self):
        command = validate_command(setpoint(byteOrder="CDAB", scalingFactor=10))
        assert command.data_type == DataType.FLOAT32
        assert command.byte_order == ByteOrder.CDAB
        assert command.scaling_factor == 10.0

    def test_default_byte_order(self):
        assert validate_command(setpoint(data_type="int16", value=5)).byte_order == ByteOrder.AB

    def test_snake_case_keys(self):
        command = validate_command(
            {"name": "X", "value": 1, "register_index": 3, "data_type": "uint16"}
        )
        assert command.register_index == 3

    @pytest.mark.parametrize("field,bad", [
        ("name", ""),
        ("value", None),
        ("value", "hot"),
        ("value", True),
        ("registerIndex", -1),
        ("registerIndex", 70000),
        ("registerIndex", "200"),
        ("dataType", None),
        ("dataType", "float64"),
        ("byteOrder", "AB"),
        ("scalingFactor", -2),
        ("scalingFactor", 0),
        ("scalingFactor", "ten"),
    ])
    def test_invalid_field(self, field, bad):
        raw = setpoint()
        raw[field] = bad
        with pytest.raises(ConfigurationError):
            validate_command(raw)


class TestSetParameter:
    """Single writes"""

    async def test_write_and_result(self, control, chiller):
        result = await control.set_parameter("chiller-1", "Setpoint", 7, "uint16", 200)
        assert result["registers"] == [7]
        assert result["register_index"] == 200
        assert chiller.transport.writes() == [(200, [7])]

    async def test_schedule_conflict_makes_zero_calls(self, control, chiller, schedule):
        schedule.set_active("chiller-1")
        with pytest.raises(ScheduleConflictError) as exc:
            await control.set_parameter("chiller-1", "Setpoint", 21.5, "float32", 200)
        assert "schedule is active" in exc.value.message
        assert chiller.transport.calls == []

    async def test_unknown_device(self, control):
        with pytest.raises(DeviceNotFoundError):
            await control.set_parameter("ghost", "Setpoint", 1, "uint16", 0)

    async def test_provider_error_treated_as_inactive(self, registry, cache, chiller):
        class BrokenSchedule:
            async def is_schedule_active(self, device_id):
                raise RuntimeError("schedule store down")

        control = ControlService(registry, BrokenSchedule(), cache)
        assert await control.check_schedule_status("chiller-1") is False
        await control.set_parameter("chiller-1", "Setpoint", 1, "uint16", 0)
        assert len(chiller.transport.writes()) == 1

    async def test_updates_cache(self, control, chiller, cache):
        cache.put(poll_event("chiller-1", Setpoint=20.0))
        await control.set_parameter("chiller-1", "Setpoint", 22.0, "float32", 0)
        assert cache.get("chiller-1").value("Setpoint") == 22.0


class TestControlDevice:
    """Multi-parameter writes to one device"""

    async def test_validation_happens_before_any_io(self, control, chiller):
        parameters = [setpoint(index=0), setpoint(name="Mode", index=10, data_type=None)]
        with pytest.raises(ConfigurationError):
            await control.control_device("chiller-1", parameters)
        assert chiller.transport.calls == []

    async def test_empty_parameter_list(self, control, chiller):
        with pytest.raises(ConfigurationError):
            await control.control_device("chiller-1", [])

    async def test_results_per_parameter(self, control, chiller):
        result = await control.control_device("chiller-1", [
            setpoint(index=0),
            setpoint(name="Mode", value=2, index=10, data_type="uint16"),
        ])
        assert result["success"] is True
        assert [r["name"] for r in result["results"]] == ["Setpoint", "Mode"]
        assert result["results"][1]["registers"] == [2]

    async def test_write_failure_reported_per_parameter(self, control, chiller):
        result = await control.control_device("chiller-1", [
            setpoint(name="Big", value=100000, index=0, data_type="uint16"),
            setpoint(name="Mode", value=2, index=10, data_type="uint16"),
        ])
        assert result["success"] is False
        assert result["results"][0]["error"]["kind"] == "EncodeError"
        assert result["results"][1]["success"] is True

    async def test_schedule_conflict(self, control, chiller, schedule):
        schedule.set_active("chiller-1")
        with pytest.raises(ScheduleConflictError):
            await control.control_device("chiller-1", [setpoint()])
        assert chiller.transport.calls == []


class TestBatchControl:
    """Failures are isolated per device"""

    async def test_one_bad_device_does_not_stop_others(self, control, registry, chiller):
        offline = Device(make_device_config("ahu-1"), InstrumentedTransport(device_id="ahu-1"))
        offline.transport.offline = True
        await registry.register(offline)

        results = await control.batch_control([
            {"deviceId": "ghost", "parameters": [setpoint()]},
            {"deviceId": "ahu-1", "parameters": [setpoint()]},
            {"deviceId": "chiller-1", "parameters": [setpoint()]},
            {"parameters": [setpoint()]},
        ])

        assert results[0]["success"] is False
        assert results[0]["error"]["kind"] == "DeviceNotFoundError"
        assert results[0]["device_id"] == "ghost"
        assert results[1]["success"] is False
        assert results[1]["results"][0]["error"]["kind"] == "ConnectionError"
        assert results[2]["success"] is True
        assert results[3]["error"]["kind"] == "ConfigurationError"
        assert len(chiller.transport.writes()) == 1

    async def test_malformed_command_is_isolated(self, control, chiller):
        results = await control.batch_control([
            "garbage",
            None,
            {"deviceId": "chiller-1", "parameters": [setpoint()]},
        ])

        assert [r["success"] for r in results] == [False, False, True]
        assert results[0]["error"]["kind"] == "ConfigurationError"
        assert results[1]["error"]["kind"] == "ConfigurationError"
        assert len(chiller.transport.writes()) == 1


class TestReadingScheduleStatus:
    """Schedule state from cached status bits"""

    async def test_active_when_both_bits_set(self, cache):
        cache.put(poll_event("d", **{"Control Mode": 1, "Schedule Enable": 1}))
        assert await ReadingScheduleStatus(cache).is_schedule_active("d") is True

    async def test_inactive_when_one_bit_clear(self, cache):
        cache.put(poll_event("d", **{"Control Mode": 1, "Schedule Enable": 0}))
        assert await ReadingScheduleStatus(cache).is_schedule_active("d") is False

    async def test_no_data_means_manual(self, cache):
        assert await ReadingScheduleStatus(cache).is_schedule_active("d") is False

    async def test_missing_bits_means_manual(self, cache):
        cache.put(poll_event("d", Temperature=21.0))
        assert await ReadingScheduleStatus(cache).is_schedule_active("d") is False
