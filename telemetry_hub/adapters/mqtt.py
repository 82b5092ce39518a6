"""
MQTT adapter for devices that publish JSON telemetry to a broker.

Subscribed topics:
    v1/devices/me/telemetry, v1/devices/telemetry, telemetry
        Generic topics; the device is named in the payload
        (``deviceId``, ``device`` or ``deviceKey``).
    devices/+/telemetry, devices/+/data, sensors/+/data, lorawan/+/uplink,
    milesight/+/data
        Device-specific topics; the ``+`` segment is the device id.

Commands are published to ``devices/{device_id}/commands``.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import paho.mqtt.client as mqtt

from ..config import MQTTSettings
from ..domain.entities.telemetry import (
    StandardTelemetry,
    TelemetryProtocol,
    coerce_timestamp,
    extract_common_fields,
)
from ..domain.exceptions import CommandDeliveryError
from ..infrastructure.retry import retry_with_backoff
from .base import ProtocolAdapter

logger = logging.getLogger(__name__)

PAYLOAD_DEVICE_KEYS = ("deviceId", "device", "deviceKey")


def decode_payload(raw_payload: Any) -> Dict[str, Any]:
    """
    Turn a raw MQTT payload into a mapping.

    Non-JSON text becomes ``{"raw": text}``; JSON that is not an object is
    wrapped as ``{"value": ...}``.
    """
    if raw_payload is None:
        return {}
    if isinstance(raw_payload, Mapping):
        return dict(raw_payload)

    if isinstance(raw_payload, (bytes, bytearray)):
        text = bytes(raw_payload).decode("utf-8", errors="replace")
    elif isinstance(raw_payload, str):
        text = raw_payload
    else:
        return {"value": raw_payload}

    try:
        decoded = json.loads(text)
    except (ValueError, RecursionError):
        return {"raw": text}

    if isinstance(decoded, dict):
        return decoded
    return {"value": decoded}


class MQTTAdapter(ProtocolAdapter):
    """
    Subscribes to device telemetry topics and publishes commands.

    paho runs its network loop in a background thread; incoming messages are
    handed to the asyncio loop with ``call_soon_threadsafe``.
    """

    protocol = TelemetryProtocol.MQTT
    supports_commands = True

    def __init__(
        self,
        settings: Optional[MQTTSettings] = None,
        client_factory: Optional[Callable[[], mqtt.Client]] = None,
    ):
        super().__init__()
        self.settings = settings or MQTTSettings()
        self._client_factory = client_factory or self._default_client

        self.client: Optional[mqtt.Client] = None
        self._connected = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Future] = None
        self._pending: Set[asyncio.Task] = set()

        # Stats
        self.messages_received = 0

    @property
    def topics(self) -> List[str]:
        return [t for t in self.settings.topics + self.settings.custom_topics if t]

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _default_client(self) -> mqtt.Client:
        client_id = self.settings.client_id or f"telemetry-hub-{uuid.uuid4().hex[:8]}"
        return mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
        )

    # ==================== Connection Management ====================

    async def _on_start(self) -> None:
        self._loop = asyncio.get_running_loop()

        self.client = self._client_factory()
        if self.settings.username:
            self.client.username_pw_set(self.settings.username, self.settings.password)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        await retry_with_backoff(
            self._connect_once,
            attempts=self.settings.connect_retries,
            base_delay=self.settings.connect_retry_delay,
            max_delay=self.settings.connect_retry_delay * 8,
            retry_on=(ConnectionError, OSError, asyncio.TimeoutError),
            description=f"Connect to MQTT broker {self.settings.broker_host}:{self.settings.broker_port}",
        )

        logger.info(f"MQTT adapter connected to {self.settings.broker_host}:{self.settings.broker_port}")

    async def _connect_once(self) -> None:
        self._connack = self._loop.create_future()

        logger.info(f"Connecting to MQTT broker at {self.settings.broker_host}:{self.settings.broker_port}")
        await self._loop.run_in_executor(
            None,
            self.client.connect,
            self.settings.broker_host,
            self.settings.broker_port,
            self.settings.keepalive,
        )

        # Start the MQTT network loop in a background thread
        self.client.loop_start()
        try:
            await asyncio.wait_for(self._connack, timeout=self.settings.connect_timeout)
        except BaseException:
            self.client.loop_stop()
            raise

    async def _on_stop(self) -> None:
        client, self.client = self.client, None
        if client is not None:
            try:
                client.disconnect()
                client.loop_stop()
            except Exception as e:
                logger.warning(f"Error during MQTT disconnect: {e}")
        self._connected = False

        # Let messages already handed to the loop finish
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # ==================== MQTT Callbacks ====================

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        """Callback when connected to MQTT broker (network thread)."""
        if reason_code.is_failure:
            self._connected = False
            error = ConnectionError(f"Connection refused: {reason_code}")
            logger.error(f"MQTT connection failed: {reason_code}")
            self._resolve_connack(error)
            return

        self._connected = True
        for topic in self.topics:
            client.subscribe(topic, qos=self.settings.qos)
        logger.info(f"Subscribed to {len(self.topics)} MQTT topics")
        self._resolve_connack(None)

    def _resolve_connack(self, error: Optional[BaseException]) -> None:
        future = self._connack
        if future is None or self._loop is None:
            return

        def resolve():
            if future.done():
                return
            if error is None:
                future.set_result(True)
            else:
                future.set_exception(error)

        self._loop.call_soon_threadsafe(resolve)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        """Callback when disconnected from MQTT broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker (reason: {reason_code})")

    def _on_message(self, client, userdata, msg) -> None:
        """Callback when a message is received (network thread)."""
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._dispatch, msg.topic, msg.payload)

    def _dispatch(self, topic: str, payload: bytes) -> None:
        task = asyncio.ensure_future(self.handle_message(topic, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def handle_message(self, topic: str, payload: Any) -> StandardTelemetry:
        """Parse one message and emit it."""
        self.messages_received += 1
        logger.debug(f"MQTT message received on {topic}")

        telemetry = self.parse(payload, {"topic": topic})
        await self.emit(telemetry)
        return telemetry

    # ==================== Telemetry Mapping ====================

    def device_id_from_topic(self, topic: str) -> Optional[str]:
        """Device id from the ``+`` segment of a matching device-specific subscription."""
        for subscription in self.topics:
            parts = subscription.split("/")
            if "+" not in parts or not mqtt.topic_matches_sub(subscription, topic):
                continue
            segment = topic.split("/")[parts.index("+")]
            if segment:
                return segment
        return None

    def parse(self, raw_payload: Any, context: Optional[Dict[str, Any]] = None) -> StandardTelemetry:
        """
        Build a record from any payload shape.

        Never raises: undecodable payloads are kept under ``raw`` and the
        device falls back to ``unknown``.
        """
        context = context or {}
        payload = decode_payload(raw_payload)
        topic = context.get("topic")

        device_id = context.get("device_id")
        if not device_id and topic:
            device_id = self.device_id_from_topic(topic)
        if not device_id:
            device_id = next(
                (str(payload[k]) for k in PAYLOAD_DEVICE_KEYS if payload.get(k) not in (None, "")),
                "unknown",
            )

        tenant_id = payload.get("tenantId")
        if not isinstance(tenant_id, str) or not tenant_id:
            tenant_id = self.settings.default_tenant_id

        common = extract_common_fields(payload)

        return StandardTelemetry(
            device_id=device_id,
            device_key=device_id,
            protocol=self.protocol,
            tenant_id=tenant_id,
            data=payload,
            timestamp=coerce_timestamp(payload.get("timestamp", payload.get("ts"))),
            metadata={"topic": topic, "qos": self.settings.qos},
            raw_payload=payload,
            **common,
        )

    # ==================== Commands ====================

    async def send_command(self, device_id: str, command: Dict[str, Any]) -> None:
        """
        Publish a command to the device's command topic and wait until the
        broker has accepted it.

        Raises:
            CommandDeliveryError: If not connected or the publish fails.
        """
        if self.client is None or not self._connected:
            raise CommandDeliveryError(device_id, "MQTT client not connected")

        topic = self.settings.command_topic_template.format(device_id=device_id)
        info = self.client.publish(topic, json.dumps(command, default=str), qos=self.settings.qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise CommandDeliveryError(device_id, f"Failed to publish command: {mqtt.error_string(info.rc)}")

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, info.wait_for_publish, self.settings.connect_timeout)
        except (RuntimeError, ValueError) as e:
            raise CommandDeliveryError(device_id, f"Failed to publish command: {e}") from e

        if not info.is_published():
            raise CommandDeliveryError(device_id, f"Command publish to {topic} timed out")

        logger.info(f"Command published to {topic}")
