"""
Unit tests for TelemetryPublisher.
"""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from telemetry_hub.domain.exceptions import PublishError
from telemetry_hub.infrastructure.messaging.topics import TELEMETRY_RAW
from telemetry_hub.workers.telemetry_publisher import TelemetryPublisher
from tests.factories import ModbusTelemetryFactory, TelemetryFactory


class TestPublish:
    """Test publishing through the fakeredis backbone."""

    @pytest.mark.asyncio
    async def test_record_lands_on_device_partition(self, backbone, device_registry):
        publisher = TelemetryPublisher(backbone, device_registry)
        telemetry = ModbusTelemetryFactory(device_id="device-1", device_key="dev-key-1")

        result = await publisher.publish(telemetry)

        assert result.topic == TELEMETRY_RAW
        client = await backbone.connect()
        entries = await client.xrange(backbone.stream_name(TELEMETRY_RAW, result.partition))
        assert len(entries) == 1
        _, fields = entries[0]
        assert fields["key"] == "dev-key-1"
        value = json.loads(fields["value"])
        assert value["deviceKey"] == "dev-key-1"
        assert value["tenantId"] == "tenant-1"
        assert value["protocol"] == "modbus"
        assert publisher.published == 1

    @pytest.mark.asyncio
    async def test_same_device_same_partition(self, backbone):
        publisher = TelemetryPublisher(backbone)

        first = await publisher.publish(TelemetryFactory(device_key="sensor-a"))
        second = await publisher.publish(TelemetryFactory(device_key="sensor-a"))

        assert first.partition == second.partition

    @pytest.mark.asyncio
    async def test_stamps_received_at(self, backbone):
        publisher = TelemetryPublisher(backbone)
        telemetry = TelemetryFactory()
        assert telemetry.received_at is None

        await publisher(telemetry)

        assert telemetry.received_at > 0

    @pytest.mark.asyncio
    async def test_keeps_tenant_from_adapter(self, backbone, device_registry):
        publisher = TelemetryPublisher(backbone, device_registry)
        telemetry = TelemetryFactory(device_key="dev-key-1", tenant_id="tenant-7")

        await publisher.publish(telemetry)

        assert telemetry.tenant_id == "tenant-7"

    @pytest.mark.asyncio
    async def test_unknown_device_has_no_tenant(self, backbone, device_registry):
        publisher = TelemetryPublisher(backbone, device_registry)
        telemetry = TelemetryFactory(device_key="stranger")

        await publisher.publish(telemetry)

        assert telemetry.tenant_id is None


class TestFailures:
    """Test that publish failures stay inside the publisher."""

    @pytest.mark.asyncio
    async def test_publish_error_is_counted(self):
        backbone = MagicMock()
        backbone.publish = AsyncMock(side_effect=PublishError(TELEMETRY_RAW, "broker unreachable"))
        publisher = TelemetryPublisher(backbone)

        result = await publisher.publish(TelemetryFactory())

        assert result is None
        assert publisher.failed == 1
        assert publisher.published == 0

    @pytest.mark.asyncio
    async def test_unprovisioned_topic(self, backbone):
        publisher = TelemetryPublisher(backbone, topic="telemetry.missing")

        assert await publisher.publish(TelemetryFactory()) is None
        assert publisher.failed == 1
