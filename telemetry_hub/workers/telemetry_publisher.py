"""
Telemetry sink that forwards adapter output to the backbone.
"""
import logging
from typing import Optional

from ..application.interfaces import DeviceRegistry
from ..domain.entities.telemetry import StandardTelemetry, received_now
from ..domain.exceptions import PublishError
from ..infrastructure.messaging.redis_streams import MessageBackbone, PublishResult
from ..infrastructure.messaging.topics import TELEMETRY_RAW

logger = logging.getLogger(__name__)


class TelemetryPublisher:
    """
    Publishes StandardTelemetry records keyed by device key.

    Registered as every adapter's telemetry callback. A failed publish is
    logged and counted; it never reaches the adapter.
    """

    def __init__(
        self,
        backbone: MessageBackbone,
        device_registry: Optional[DeviceRegistry] = None,
        topic: str = TELEMETRY_RAW,
    ):
        self._backbone = backbone
        self._devices = device_registry
        self.topic = topic

        # Stats
        self.published = 0
        self.failed = 0

    async def __call__(self, telemetry: StandardTelemetry) -> None:
        await self.publish(telemetry)

    async def publish(self, telemetry: StandardTelemetry) -> Optional[PublishResult]:
        """Stamp, enrich and publish one record."""
        telemetry.received_at = received_now()

        if telemetry.tenant_id is None and self._devices is not None:
            device = await self._devices.get_device(telemetry.device_key)
            if device is not None:
                telemetry.tenant_id = device.tenant_id

        try:
            result = await self._backbone.publish(
                self.topic,
                telemetry.to_dict(),
                key=telemetry.device_key,
            )
        except PublishError as e:
            self.failed += 1
            logger.error(f"Failed to publish telemetry for {telemetry.device_key}: {e.message}")
            return None

        self.published += 1
        logger.debug(f"Published telemetry for {telemetry.device_key} to {self.topic}[{result.partition}]")
        return result
