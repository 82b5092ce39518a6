"""
Unit tests for MQTTAdapter.

A fake paho client stands in for the broker connection; callbacks are
invoked the way paho's network thread would invoke them.
"""
import asyncio
import json
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from telemetry_hub.adapters.base import AdapterState
from telemetry_hub.adapters.mqtt import MQTTAdapter, decode_payload
from telemetry_hub.config import MQTTSettings
from telemetry_hub.domain.entities.telemetry import TelemetryProtocol
from telemetry_hub.domain.exceptions import AdapterConnectionError, CommandDeliveryError


class FakeReasonCode:
    def __init__(self, failure: bool = False):
        self.is_failure = failure

    def __str__(self):
        return "Not authorized" if self.is_failure else "Success"


class FakeMQTTClient:
    """Records calls and acknowledges the connection from loop_start."""

    def __init__(self, refuse: bool = False):
        self.refuse = refuse
        self.subscriptions = []
        self.published = []
        self.connected_to = None
        self.loop_running = False
        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    def username_pw_set(self, username, password):
        self.credentials = (username, password)

    def connect(self, host, port, keepalive):
        self.connected_to = (host, port, keepalive)

    def loop_start(self):
        self.loop_running = True
        self.on_connect(self, None, {}, FakeReasonCode(self.refuse), None)

    def loop_stop(self):
        self.loop_running = False

    def disconnect(self):
        self.connected_to = None

    def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))

    def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload, qos))
        info = MagicMock()
        info.rc = mqtt.MQTT_ERR_SUCCESS
        info.is_published.return_value = True
        return info


@pytest.fixture
def settings() -> MQTTSettings:
    return MQTTSettings(
        username="hub",
        password="secret",
        connect_retries=1,
        connect_retry_delay=0.01,
        connect_timeout=1.0,
        custom_topics=["plant/+/metrics"],
        default_tenant_id="tenant-1",
    )


@pytest.fixture
def fake_client() -> FakeMQTTClient:
    return FakeMQTTClient()


@pytest.fixture
def adapter(settings, fake_client) -> MQTTAdapter:
    return MQTTAdapter(settings, client_factory=lambda: fake_client)


class TestLifecycle:
    """Test connect, subscribe and stop."""

    @pytest.mark.asyncio
    async def test_start_subscribes_to_all_topics(self, adapter, fake_client, settings):
        await adapter.start()

        assert adapter.state == AdapterState.RUNNING
        assert adapter.is_connected
        assert fake_client.credentials == ("hub", "secret")
        subscribed = [topic for topic, _ in fake_client.subscriptions]
        assert subscribed == settings.topics + ["plant/+/metrics"]
        assert all(qos == 1 for _, qos in fake_client.subscriptions)

        await adapter.stop()
        assert not fake_client.loop_running
        assert not adapter.is_connected

    @pytest.mark.asyncio
    async def test_refused_connection(self, settings):
        adapter = MQTTAdapter(settings, client_factory=lambda: FakeMQTTClient(refuse=True))

        with pytest.raises(AdapterConnectionError):
            await adapter.start()
        assert adapter.state == AdapterState.STOPPED

    @pytest.mark.asyncio
    async def test_unreachable_broker(self, settings):
        client = FakeMQTTClient()
        client.connect = MagicMock(side_effect=ConnectionRefusedError("refused"))
        adapter = MQTTAdapter(settings, client_factory=lambda: client)

        with pytest.raises(AdapterConnectionError):
            await adapter.start()


class TestMessages:
    """Test message flow from the network thread to the sink."""

    @pytest.mark.asyncio
    async def test_message_is_parsed_and_emitted(self, adapter, fake_client):
        received = []

        async def sink(telemetry):
            received.append(telemetry)

        adapter.set_on_telemetry(sink)
        await adapter.start()

        message = MagicMock(topic="devices/sensor-9/telemetry", payload=b'{"temperature": 19.5}')
        fake_client.on_message(fake_client, None, message)

        for _ in range(100):
            if received:
                break
            await asyncio.sleep(0.01)

        assert received[0].device_id == "sensor-9"
        assert received[0].temperature == 19.5
        assert adapter.messages_received == 1
        await adapter.stop()


class TestParse:
    """Test payload mapping."""

    def test_device_id_from_topic(self, adapter):
        telemetry = adapter.parse(b'{"humidity": 40}', {"topic": "sensors/room-1/data"})
        assert telemetry.device_id == "room-1"
        assert telemetry.humidity == 40.0
        assert telemetry.metadata == {"topic": "sensors/room-1/data", "qos": 1}

    def test_custom_topic_pattern(self, adapter):
        assert adapter.device_id_from_topic("plant/line-2/metrics") == "line-2"

    def test_generic_topic_uses_payload(self, adapter):
        telemetry = adapter.parse(
            json.dumps({"deviceKey": "gw-7", "ts": 1700000000000, "battery": 88}),
            {"topic": "v1/devices/me/telemetry"},
        )
        assert telemetry.device_id == "gw-7"
        assert telemetry.battery_level == 88.0
        assert telemetry.timestamp.year == 2023

    def test_unknown_device(self, adapter):
        assert adapter.parse(b'{"a": 1}', {"topic": "telemetry"}).device_id == "unknown"

    def test_tenant_from_payload_or_default(self, adapter):
        assert adapter.parse({"tenantId": "tenant-9"}).tenant_id == "tenant-9"
        assert adapter.parse({}).tenant_id == "tenant-1"

    @pytest.mark.parametrize("payload", [
        b"\xff\xfe not json",
        b"",
        "plain text",
        b"[1, 2, 3]",
        b"42",
        None,
        12.5,
        {"temperature": {"nested": "object"}},
    ])
    def test_parse_never_raises(self, adapter, payload):
        telemetry = adapter.parse(payload, {"topic": "telemetry"})
        assert telemetry.protocol == TelemetryProtocol.MQTT
        assert telemetry.device_key

    def test_deeply_nested_json_kept_raw(self, adapter):
        payload = b'{"a":' * 5000 + b"1" + b"}" * 5000

        telemetry = adapter.parse(payload, {"topic": "devices/d1/telemetry"})

        assert telemetry.device_id == "d1"
        assert telemetry.data["raw"].startswith('{"a":')

    def test_nested_json_within_decoder_limit(self, adapter):
        payload = b'{"a":' * 500 + b'{"temp": 21}' + b"}" * 500

        telemetry = adapter.parse(payload, {"topic": "devices/d1/telemetry"})

        assert telemetry.temperature == 21.0

    def test_decode_payload_shapes(self):
        assert decode_payload(b"hello") == {"raw": "hello"}
        assert decode_payload(b"[1]") == {"value": [1]}
        assert decode_payload(b'{"a": 1}') == {"a": 1}
        assert decode_payload(None) == {}


class TestCommands:
    """Test command publishing."""

    @pytest.mark.asyncio
    async def test_send_command_publishes_json(self, adapter, fake_client):
        await adapter.start()

        await adapter.send_command("sensor-9", {"commandType": "reboot", "params": {}})

        topic, payload, qos = fake_client.published[0]
        assert topic == "devices/sensor-9/commands"
        assert json.loads(payload) == {"commandType": "reboot", "params": {}}
        assert qos == 1
        await adapter.stop()

    @pytest.mark.asyncio
    async def test_send_command_not_connected(self, adapter):
        with pytest.raises(CommandDeliveryError):
            await adapter.send_command("sensor-9", {"commandType": "reboot"})

    @pytest.mark.asyncio
    async def test_publish_rejected(self, adapter, fake_client):
        await adapter.start()
        info = MagicMock(rc=mqtt.MQTT_ERR_NO_CONN)
        fake_client.publish = MagicMock(return_value=info)

        with pytest.raises(CommandDeliveryError):
            await adapter.send_command("sensor-9", {"commandType": "reboot"})
        await adapter.stop()
