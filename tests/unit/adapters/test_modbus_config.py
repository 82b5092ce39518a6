"""
Unit tests for Modbus device configuration loading.
"""
import json

import pytest

from telemetry_hub.adapters.modbus.config import (
    ModbusDeviceConfig,
    Transport,
    load_device_configs,
    load_from_file,
    parse_device,
    parse_devices,
)
from telemetry_hub.config import ModbusSettings


DEVICE = {
    "id": "plc-1",
    "deviceKey": "plc-key-1",
    "name": "Boiler PLC",
    "type": "TCP",
    "ip": "10.0.0.5",
    "slaveId": 3,
    "pollInterval": 2000,
    "tenantId": "tenant-1",
    "registers": [
        {"name": "temperature", "registerType": "holding", "address": 0, "dataType": "int16", "scale": 0.1, "unit": "C"},
        {"name": "running", "registerType": "coil", "address": 1, "dataType": "bool"},
    ],
}


class TestParseDevice:
    """Test descriptor parsing."""

    def test_camel_case_descriptor(self):
        device = parse_device(DEVICE)

        assert device.transport == Transport.TCP
        assert device.host == "10.0.0.5"
        assert device.port == 502
        assert device.slave_id == 3
        assert device.poll_interval_seconds == 2.0
        assert device.registers[0].scale == 0.1
        assert device.registers[1].length == 1

    def test_rtu_descriptor(self):
        device = parse_device({
            "id": "meter-1",
            "transport": "rtu",
            "serial_port": "/dev/ttyUSB0",
            "baud_rate": 19200,
            "parity": "Even",
        })

        assert device.transport == Transport.RTU
        assert device.address == "/dev/ttyUSB0"
        assert device.parity == "even"
        assert device.device_key == "meter-1"

    def test_tcp_requires_host(self):
        with pytest.raises(ValueError):
            ModbusDeviceConfig(id="x", device_key="x", name="x")

    def test_invalid_entries_are_skipped(self):
        devices = parse_devices({"devices": [DEVICE, {"name": "no id"}, {"id": "bad", "type": "TCP"}]})
        assert [d.id for d in devices] == ["plc-1"]


class TestLoading:
    """Test file and environment sources."""

    def test_yaml_file(self, tmp_path):
        path = tmp_path / "devices.yaml"
        path.write_text(
            "devices:\n"
            "  - id: plc-1\n"
            "    ip: 10.0.0.5\n"
            "    registers:\n"
            "      - {name: temperature, address: 0}\n"
        )

        devices = load_from_file(path)

        assert devices[0].host == "10.0.0.5"
        assert devices[0].registers[0].name == "temperature"

    def test_json_file(self, tmp_path):
        path = tmp_path / "devices.json"
        path.write_text(json.dumps([DEVICE]))
        assert load_from_file(path)[0].id == "plc-1"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_from_file(tmp_path / "missing.yaml")

    def test_inline_json_setting(self):
        settings = ModbusSettings(devices=json.dumps([DEVICE]))
        assert [d.id for d in load_device_configs(settings)] == ["plc-1"]

    def test_invalid_inline_json(self):
        assert load_device_configs(ModbusSettings(devices="{not json")) == []
