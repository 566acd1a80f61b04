"""
Tests for configuration dataclasses, record parsing and gateway settings.
"""

import pytest

from fieldgate.common.config import (
    ByteOrder,
    DataType,
    Float32Parameter,
    GatewaySettings,
    Int16Parameter,
    NetworkConnection,
    RegisterClass,
    SerialConnection,
    UInt32Parameter,
    load_gateway_settings,
    make_parameter,
    parse_device_record,
)
from fieldgate.common.exceptions import ConfigurationError


class TestParameters:
    """Tagged-union parameter variants"""

    def test_default_byte_order_single_word(self):
        assert Int16Parameter(id="a", name="A", address=0).byte_order == ByteOrder.AB

    def test_default_byte_order_double_word(self):
        assert Float32Parameter(id="a", name="A", address=0).byte_order == ByteOrder.ABCD

    def test_string_byte_order_is_parsed(self):
        p = UInt32Parameter(id="a", name="A", address=0, byte_order="cdab")
        assert p.byte_order == ByteOrder.CDAB

    def test_incompatible_byte_order_rejected(self):
        with pytest.raises(ConfigurationError) as exc:
            Int16Parameter(id="a", name="A", address=0, byte_order="ABCD")
        assert exc.value.field == "byteOrder"

    def test_double_word_rejects_ab(self):
        with pytest.raises(ConfigurationError):
            Float32Parameter(id="a", name="A", address=0, byte_order=ByteOrder.AB)

    def test_scaling_factor_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            Int16Parameter(id="a", name="A", address=0, scaling_factor=0)

    def test_address_range(self):
        with pytest.raises(ConfigurationError):
            Int16Parameter(id="a", name="A", address=70000)

    def test_register_class_from_string(self):
        p = Int16Parameter(id="a", name="A", address=5, register_class="input_register")
        assert p.register_class == RegisterClass.INPUT_REGISTER
        assert p.function_code == 4

    def test_bit_class_rejects_double_word_type(self):
        with pytest.raises(ConfigurationError):
            Float32Parameter(id="a", name="A", address=0, register_class=RegisterClass.COIL)

    def test_make_parameter_picks_variant(self):
        p = make_parameter("FLOAT32", id="t", name="T", address=100)
        assert isinstance(p, Float32Parameter)
        assert p.word_count == 2
        assert p.end_address == 102

    def test_unknown_data_type(self):
        with pytest.raises(ConfigurationError):
            make_parameter("float64", id="t", name="T", address=0)

    def test_function_code_mapping(self):
        assert RegisterClass.from_function_code(1) == RegisterClass.COIL
        assert RegisterClass.from_function_code(2) == RegisterClass.DISCRETE_INPUT
        assert RegisterClass.from_function_code(3) == RegisterClass.HOLDING_REGISTER
        assert RegisterClass.from_function_code(4) == RegisterClass.INPUT_REGISTER
        with pytest.raises(ConfigurationError):
            RegisterClass.from_function_code(16)


class TestDeviceRecords:
    """Parsing store records into DeviceConfig"""

    @pytest.fixture
    def record(self):
        return {
            "id": "meter-1",
            "name": "Main Meter",
            "enabled": True,
            "connectionSetting": {
                "connectionType": "tcp",
                "tcp": {"ip": "192.168.1.30", "port": 5020, "slaveId": 7},
            },
            "dataPoints": [
                {
                    "range": {"startAddress": 100, "count": 4, "functionCode": 3},
                    "parser": {
                        "parameters": [
                            {
                                "name": "Temperature",
                                "dataType": "FLOAT32",
                                "registerIndex": 100,
                                "byteOrder": "ABCD",
                                "scalingFactor": 10,
                                "decimalPoint": 1,
                                "unit": "C",
                            },
                            {
                                "name": "Status",
                                "dataType": "UINT16",
                                "registerIndex": 2,
                            },
                        ]
                    },
                }
            ],
        }

    def test_network_connection(self, record):
        config = parse_device_record(record)
        assert config.connection == NetworkConnection(host="192.168.1.30", port=5020, unit_id=7)

    def test_absolute_register_index(self, record):
        config = parse_device_record(record)
        temperature = config.parameters[0]
        assert isinstance(temperature, Float32Parameter)
        assert temperature.address == 100
        assert temperature.scaling_factor == 10
        assert temperature.unit == "C"

    def test_relative_register_index(self, record):
        config = parse_device_record(record)
        assert config.parameters[1].address == 102

    def test_register_index_out_of_range_skips_parameter(self, record):
        record["dataPoints"][0]["parser"]["parameters"][1]["registerIndex"] = 500
        config = parse_device_record(record)
        assert [p.name for p in config.parameters] == ["Temperature"]

    @pytest.mark.parametrize("field,bad", [
        ("dataType", None),
        ("dataType", "float64"),
        ("registerIndex", None),
        ("registerIndex", "first"),
        ("byteOrder", "AB"),
        ("scalingFactor", 0),
        ("decimalPoint", "one"),
    ])
    def test_invalid_parameter_is_skipped(self, record, field, bad):
        params = record["dataPoints"][0]["parser"]["parameters"]
        if bad is None:
            del params[0][field]
        else:
            params[0][field] = bad
        config = parse_device_record(record)
        assert [p.name for p in config.parameters] == ["Status"]

    def test_invalid_range_rejects_record(self, record):
        record["dataPoints"][0]["range"]["count"] = "four"
        with pytest.raises(ConfigurationError) as exc:
            parse_device_record(record)
        assert exc.value.field == "count"

    def test_non_numeric_port(self, record):
        record["connectionSetting"]["tcp"]["port"] = "abc"
        with pytest.raises(ConfigurationError) as exc:
            parse_device_record(record)
        assert exc.value.field == "port"

    def test_function_code_selects_register_class(self, record):
        record["dataPoints"][0]["range"]["functionCode"] = 4
        config = parse_device_record(record)
        assert all(p.register_class == RegisterClass.INPUT_REGISTER for p in config.parameters)

    def test_serial_connection(self):
        config = parse_device_record({
            "id": "rtu-1",
            "name": "Chiller",
            "connectionSetting": {
                "connectionType": "rtu",
                "rtu": {
                    "serialPort": "/dev/ttyUSB0",
                    "baudRate": 19200,
                    "dataBits": 8,
                    "stopBits": 2,
                    "parity": "even",
                    "slaveId": 3,
                },
            },
        })
        assert config.connection == SerialConnection(
            port="/dev/ttyUSB0", baud_rate=19200, data_bits=8, stop_bits=2, parity="E", unit_id=3
        )

    def test_flat_legacy_connection(self):
        config = parse_device_record({
            "id": "d", "name": "D", "connectionType": "tcp", "ip": "10.0.0.9", "slaveId": 4,
        })
        assert config.connection == NetworkConnection(host="10.0.0.9", port=502, unit_id=4)

    def test_missing_host(self):
        with pytest.raises(ConfigurationError):
            parse_device_record({"id": "d", "name": "D", "connectionSetting": {"connectionType": "tcp"}})

    def test_legacy_registers(self):
        config = parse_device_record({
            "id": "old",
            "name": "Old Meter",
            "ip": "10.0.0.2",
            "registers": [
                {"name": "Power", "address": 10, "length": 1, "scaleFactor": 10, "unit": "kW"},
                {"name": "Energy", "address": 20, "length": 2, "byteOrder": "CDAB"},
            ],
        })
        power, energy = config.parameters
        assert power.data_type == DataType.UINT16
        assert power.register_class == RegisterClass.HOLDING_REGISTER
        assert power.byte_order == ByteOrder.AB
        assert power.scaling_factor == 10
        assert energy.data_type == DataType.UINT32
        assert energy.byte_order == ByteOrder.CDAB

    def test_timeout_ms(self):
        config = parse_device_record({"id": "d", "name": "D", "ip": "h", "timeout": 5000})
        assert config.timeout_s == 5.0

    def test_disabled_flag(self):
        assert parse_device_record({"id": "d", "ip": "h", "enabled": False}).enabled is False


class TestGatewaySettings:
    """YAML settings with env overrides"""

    def test_defaults_when_missing(self, tmp_path):
        settings = load_gateway_settings(tmp_path / "missing.yaml")
        assert settings == GatewaySettings()
        assert settings.monitoring_interval_ms == 10000
        assert settings.cache_ttl_s == 60.0

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "gateway.yaml"
        path.write_text(
            "gateway:\n"
            "  monitoring_interval_ms: 2000\n"
            "  health_port: 9000\n"
            "  devices_file: /etc/fieldgate/devices.yaml\n"
        )
        settings = load_gateway_settings(path)
        assert settings.monitoring_interval_ms == 2000
        assert settings.health_port == 9000
        assert settings.devices_file == "/etc/fieldgate/devices.yaml"

    def test_env_overrides(self, tmp_path, monkeypatch):
        path = tmp_path / "gateway.yaml"
        path.write_text("health_port: 9000\n")
        monkeypatch.setenv("FIELDGATE_HEALTH_PORT", "9100")
        monkeypatch.setenv("FIELDGATE_MONITOR_INTERVAL_MS", "500")
        monkeypatch.setenv("FIELDGATE_HISTORY_DB", str(tmp_path / "h.db"))
        settings = load_gateway_settings(path)
        assert settings.health_port == 9100
        assert settings.monitoring_interval_ms == 500
        assert settings.history_db == str(tmp_path / "h.db")
