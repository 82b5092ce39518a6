"""
Unit tests for ModbusAdapter against the Modbus TCP simulator.
"""
import asyncio

import pytest
import pytest_asyncio

from telemetry_hub.adapters.base import AdapterState
from telemetry_hub.adapters.modbus.adapter import ModbusAdapter
from telemetry_hub.adapters.modbus.client import ModbusClient, ModbusExceptionResponse
from telemetry_hub.adapters.modbus.config import ModbusDeviceConfig
from telemetry_hub.adapters.modbus.registers import DataType, RegisterDefinition, RegisterType
from telemetry_hub.config import ModbusSettings
from telemetry_hub.domain.entities.telemetry import TelemetryProtocol
from telemetry_hub.domain.exceptions import AdapterConnectionError, CommandDeliveryError
from tests.simulators import ModbusTCPSimulator


def make_device(
    port: int,
    device_id: str = "plc-1",
    poll_interval: int = 60000,
    timeout: int = 1000,
) -> ModbusDeviceConfig:
    return ModbusDeviceConfig(
        id=device_id,
        device_key=device_id.replace("plc-", "plc-key-"),
        name="Boiler PLC",
        host="127.0.0.1",
        port=port,
        timeout=timeout,
        poll_interval=poll_interval,
        tenant_id="tenant-1",
        registers=[
            RegisterDefinition("temperature", RegisterType.HOLDING, 0, DataType.INT16, scale=0.1, unit="C"),
            RegisterDefinition("humidity", RegisterType.INPUT, 1, DataType.UINT16),
            RegisterDefinition("pressure", RegisterType.HOLDING, 5, DataType.UINT16, unit="hPa"),
            RegisterDefinition("running", RegisterType.COIL, 2, DataType.BOOL),
        ],
    )


@pytest.fixture
def fast_settings() -> ModbusSettings:
    return ModbusSettings(connect_retries=1, connect_retry_delay=0.01, connect_max_retry_delay=0.01)


@pytest.fixture
def emitted():
    return []


@pytest_asyncio.fixture
async def adapter(modbus_simulator, fast_settings, emitted):
    modbus_simulator.set_register(0, 0xFF38)
    modbus_simulator.set_register(1, 45)
    modbus_simulator.set_register(5, 1013)
    modbus_simulator.coils[2] = True

    adapter = ModbusAdapter(fast_settings, devices=[make_device(modbus_simulator.port)])

    async def sink(telemetry):
        emitted.append(telemetry)

    adapter.set_on_telemetry(sink)
    await adapter.start()
    yield adapter
    await adapter.stop()


class TestClient:
    """Test the Modbus client directly."""

    @pytest.mark.asyncio
    async def test_read_and_write(self, modbus_simulator):
        client = ModbusClient(make_device(modbus_simulator.port))
        await client.connect()
        try:
            await client.write_register(10, 0xBEEF)
            assert await client.read_words(RegisterType.HOLDING, 10, 1) == [0xBEEF]

            await client.write_coil(4, True)
            assert await client.read_bits(RegisterType.COIL, 4, 1) == [True]
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_exception_response(self, modbus_simulator):
        modbus_simulator.failing_addresses.add(7)
        client = ModbusClient(make_device(modbus_simulator.port))
        await client.connect()
        try:
            with pytest.raises(ModbusExceptionResponse) as exc_info:
                await client.read_words(RegisterType.HOLDING, 7, 1)
            assert exc_info.value.exception_code == 0x02
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_request_when_not_connected(self, modbus_simulator):
        client = ModbusClient(make_device(modbus_simulator.port))
        with pytest.raises(ConnectionError):
            await client.read_words(RegisterType.HOLDING, 0, 1)


class TestPolling:
    """Test poll cycles."""

    @pytest.mark.asyncio
    async def test_poll_decodes_registers(self, adapter):
        telemetry = await adapter.poll_device("plc-1")

        assert telemetry.protocol == TelemetryProtocol.MODBUS
        assert telemetry.device_key == "plc-key-1"
        assert telemetry.tenant_id == "tenant-1"
        assert telemetry.temperature == pytest.approx(-20.0)
        assert telemetry.humidity == 45.0
        assert telemetry.pressure == 1013.0
        assert telemetry.data["running"] is True
        assert telemetry.metadata["deviceName"] == "Boiler PLC"
        assert telemetry.metadata["units"] == {"temperature": "C", "pressure": "hPa"}

    @pytest.mark.asyncio
    async def test_failing_register_is_omitted(self, adapter, modbus_simulator):
        modbus_simulator.failing_addresses.add(5)

        telemetry = await adapter.poll_device("plc-1")

        assert "pressure" not in telemetry.data
        assert telemetry.pressure is None
        assert telemetry.temperature == pytest.approx(-20.0)
        assert adapter.get_polling_stats()["plc-1"]["failed_reads"] >= 1

    @pytest.mark.asyncio
    async def test_poll_loop_emits_on_start(self, adapter, emitted):
        # The first cycle runs as soon as polling starts
        for _ in range(200):
            if emitted:
                break
            await asyncio.sleep(0.01)

        assert emitted[0].device_key == "plc-key-1"
        assert adapter.records_emitted >= 1

    @pytest.mark.asyncio
    async def test_unknown_device(self, adapter):
        assert await adapter.poll_device("nope") is None

    @pytest.mark.asyncio
    async def test_slow_device_does_not_delay_others(self, modbus_simulator, fast_settings):
        slow_simulator = ModbusTCPSimulator()
        await slow_simulator.start()
        slow_simulator.response_delay = 0.3

        emitted = []

        async def sink(telemetry):
            emitted.append(telemetry.device_key)

        adapter = ModbusAdapter(fast_settings, devices=[
            make_device(slow_simulator.port, device_id="plc-slow", timeout=2000),
            make_device(modbus_simulator.port, device_id="plc-fast", poll_interval=50),
        ])
        adapter.set_on_telemetry(sink)
        await adapter.start()
        try:
            # One slow cycle takes four delayed reads
            await asyncio.sleep(0.6)
            assert emitted.count("plc-key-fast") >= 3
            assert "plc-key-slow" not in emitted
        finally:
            await adapter.stop()
            await slow_simulator.stop()


class TestLifecycle:
    """Test start/stop behaviour."""

    @pytest.mark.asyncio
    async def test_unreachable_device_fails_start(self, fast_settings):
        simulator = ModbusTCPSimulator()
        port = await simulator.start()
        await simulator.stop()

        adapter = ModbusAdapter(fast_settings, devices=[make_device(port)])

        with pytest.raises(AdapterConnectionError):
            await adapter.start()
        assert adapter.state == AdapterState.STOPPED

    @pytest.mark.asyncio
    async def test_partial_start_releases_connected_devices(self, modbus_simulator, fast_settings):
        dead = ModbusTCPSimulator()
        dead_port = await dead.start()
        await dead.stop()

        clients = []

        def client_factory(config):
            client = ModbusClient(config)
            clients.append(client)
            return client

        adapter = ModbusAdapter(
            fast_settings,
            devices=[make_device(modbus_simulator.port), make_device(dead_port, device_id="plc-2")],
            client_factory=client_factory,
        )

        with pytest.raises(AdapterConnectionError):
            await adapter.start()

        assert len(clients) == 2
        assert not clients[0].is_connected
        assert adapter._clients == {}
        assert adapter._devices == {}
        assert adapter.state == AdapterState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, adapter):
        await adapter.stop()
        await adapter.stop()
        assert adapter.state == AdapterState.STOPPED
        assert adapter.get_polling_stats()["plc-1"]["polling"] is False

    @pytest.mark.asyncio
    async def test_no_devices(self, fast_settings):
        adapter = ModbusAdapter(fast_settings, devices=[])
        await adapter.start()
        assert adapter.is_running
        await adapter.stop()


class TestCommands:
    """Test register and coil writes."""

    @pytest.mark.asyncio
    async def test_write_holding_register(self, adapter, modbus_simulator):
        await adapter.send_command("plc-key-1", {"params": {"address": 10, "value": 250}})
        assert modbus_simulator.registers[10] == 250

    @pytest.mark.asyncio
    async def test_write_coil(self, adapter, modbus_simulator):
        await adapter.send_command("plc-1", {"address": 3, "value": 1, "registerType": "coil"})
        assert modbus_simulator.coils[3] is True

    @pytest.mark.asyncio
    async def test_register_write_command(self, adapter, modbus_simulator):
        await adapter.send_command("plc-key-1", {"function": "set_setpoint", "address": 11, "value": 42})
        assert modbus_simulator.registers[11] == 42

    @pytest.mark.asyncio
    async def test_coil_function_selects_coil_table(self, adapter, modbus_simulator):
        await adapter.send_command("plc-key-1", {"function": "write_coil", "address": 6, "value": True})
        assert modbus_simulator.coils[6] is True

    @pytest.mark.asyncio
    async def test_missing_value_rejected(self, adapter, modbus_simulator):
        with pytest.raises(CommandDeliveryError):
            await adapter.send_command("plc-key-1", {"function": "set_setpoint", "address": 11, "value": None})
        assert 11 not in modbus_simulator.registers

    @pytest.mark.asyncio
    async def test_unknown_device(self, adapter):
        with pytest.raises(CommandDeliveryError):
            await adapter.send_command("nope", {"address": 1, "value": 1})

    @pytest.mark.asyncio
    async def test_malformed_command(self, adapter):
        with pytest.raises(CommandDeliveryError):
            await adapter.send_command("plc-1", {"params": {"value": 1}})

    @pytest.mark.asyncio
    async def test_read_only_table(self, adapter):
        with pytest.raises(CommandDeliveryError):
            await adapter.send_command("plc-1", {"address": 1, "value": 1, "registerType": "input"})


class TestParse:
    """Test that parse tolerates anything."""

    @pytest.mark.parametrize("payload", [None, "garbage", 42, [], {"data": "x"}, {"deviceKey": None}])
    def test_parse_never_raises(self, payload):
        telemetry = ModbusAdapter(devices=[]).parse(payload)
        assert telemetry.protocol == TelemetryProtocol.MODBUS
        assert telemetry.timestamp is not None
