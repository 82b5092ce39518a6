"""
Command execution worker.

Consumes command envelopes from the backbone and delivers them to devices
through the adapter registered for the device's protocol.
"""
import logging
from datetime import datetime
from typing import Any, AsyncContextManager, Callable, Dict, Optional
from uuid import UUID

from ..adapters.registry import AdapterRegistry
from ..application.interfaces import DeviceRegistry
from ..application.services.command_service import CommandService
from ..config import CommandSettings
from ..domain.entities.base import to_epoch_ms, utcnow
from ..domain.entities.command import CommandEnvelope, CommandPriority, CommandStatus, DeviceCommand
from ..domain.entities.telemetry import TelemetryProtocol
from ..domain.exceptions import (
    AdapterNotRegistered,
    CommandDeliveryError,
    DeviceNotFound,
    PublishError,
)
from ..infrastructure.messaging.consumer import BackboneMessage, ConsumerGroup, RedeliveryPolicy
from ..infrastructure.messaging.redis_streams import MessageBackbone

logger = logging.getLogger(__name__)

# Opens a unit of work and yields a CommandService bound to it
ServiceScope = Callable[[], AsyncContextManager[CommandService]]

DELIVERY_ERRORS = (CommandDeliveryError, AdapterNotRegistered, DeviceNotFound)


def format_command(
    protocol: TelemetryProtocol,
    envelope: CommandEnvelope,
    now: Optional[datetime] = None,
) -> Any:
    """
    Shape a command for the device's protocol.

    MQTT devices get the command name, its params, a send timestamp and
    the command id as ``requestId``. HTTP devices get ``method``/``data``.
    Modbus devices get a register write. Other protocols get the bare
    params.
    """
    if protocol == TelemetryProtocol.MQTT:
        return {
            "command": envelope.command_type,
            "params": envelope.params,
            "timestamp": to_epoch_ms(now or utcnow()),
            "requestId": str(envelope.id),
        }
    if protocol == TelemetryProtocol.HTTP:
        return {
            "method": envelope.command_type,
            "data": envelope.params,
            "requestId": str(envelope.id),
        }
    if protocol == TelemetryProtocol.MODBUS:
        return {
            "function": envelope.command_type,
            "address": envelope.params.get("address"),
            "value": envelope.params.get("value"),
        }
    return envelope.params


def failure_alarm(envelope: CommandEnvelope, error: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Alarm raised when an URGENT command cannot be delivered."""
    return {
        "id": f"cmd-fail-{envelope.id}",
        "deviceId": envelope.device_id,
        "deviceKey": envelope.device_key,
        "tenantId": envelope.tenant_id,
        "userId": envelope.user_id,
        "severity": "MAJOR",
        "type": "COMMAND_FAILURE",
        "title": "Critical Command Failed",
        "message": f"Failed to execute {envelope.command_type}: {error}",
        "timestamp": to_epoch_ms(now or utcnow()),
        "metadata": {
            "commandId": str(envelope.id),
            "commandType": envelope.command_type,
            "error": error,
        },
    }


class CommandWorker:
    """
    Background worker for device commands.

    Each envelope moves its command QUEUED -> SENT, or to FAILED when the
    device cannot be reached. Status changes are committed in their own
    unit of work so a crash mid-delivery leaves the command QUEUED.
    """

    def __init__(
        self,
        backbone: MessageBackbone,
        service_scope: ServiceScope,
        device_registry: DeviceRegistry,
        adapter_registry: AdapterRegistry,
        settings: Optional[CommandSettings] = None,
    ):
        self._backbone = backbone
        self._service_scope = service_scope
        self._devices = device_registry
        self._adapters = adapter_registry
        self.settings = settings or CommandSettings()

        self._group: Optional[ConsumerGroup] = None

        # Stats
        self.commands_sent = 0
        self.commands_failed = 0
        self.commands_skipped = 0
        self.alarms_raised = 0

    @property
    def is_running(self) -> bool:
        return self._group is not None

    async def start(self) -> None:
        """Join the command consumer group."""
        if self._group is not None:
            logger.warning("Command worker already running")
            return

        self._group = await self._backbone.subscribe(
            self.settings.consumer_group,
            [self.settings.topic, self.settings.retry_topic],
            self.handle,
            redelivery=RedeliveryPolicy(
                max_attempts=self.settings.redelivery_attempts,
                backoff=self.settings.redelivery_backoff,
            ),
        )
        logger.info("Command worker started")

    async def stop(self) -> None:
        """Leave the consumer group; a delivery in progress finishes first."""
        group, self._group = self._group, None
        if group is None:
            return

        await group.stop()
        logger.info(
            f"Command worker stopped. "
            f"Sent: {self.commands_sent}, Failed: {self.commands_failed}, Skipped: {self.commands_skipped}"
        )

    # =========================================================================
    # Message handling
    # =========================================================================

    async def handle(self, message: BackboneMessage) -> None:
        """
        Process one command envelope.

        Malformed envelopes are logged and dropped. Persistence errors and
        commands that cannot be loaded propagate so the message stays
        unacknowledged.
        """
        try:
            envelope = CommandEnvelope.from_dict(message.value)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Dropping malformed command message at {message.topic}[{message.partition}] {message.offset}: {e}")
            self.commands_skipped += 1
            return

        command = await self._claim(envelope)
        if command is None:
            self.commands_skipped += 1
            return

        try:
            await self._deliver(envelope)
        except DELIVERY_ERRORS as e:
            async with self._service_scope() as service:
                await service.mark_failed(envelope.id, envelope.tenant_id, e.message)
            self.commands_failed += 1
            if envelope.priority == CommandPriority.URGENT:
                await self._raise_failure_alarm(envelope, e.message)
            return

        async with self._service_scope() as service:
            await service.mark_sent(envelope.id, envelope.tenant_id)
        self.commands_sent += 1

    async def _claim(self, envelope: CommandEnvelope) -> Optional[DeviceCommand]:
        """
        Move the command to QUEUED, or return None if it should not be delivered.

        Raises:
            CommandNotFound: If the command is not visible (yet) to this worker.
        """
        async with self._service_scope() as service:
            command = await service.get_command_status(envelope.id, envelope.tenant_id)

            if command.status == CommandStatus.QUEUED:
                # Claimed before a restart, delivery never confirmed
                return command

            if command.is_completed() or not command.can_transition_to(CommandStatus.QUEUED):
                logger.info(f"Command {command.id} is {command.status.value}, skipping")
                return None

            if not command.is_due():
                logger.info(f"Command {command.id} scheduled for {command.scheduled_for}, leaving SCHEDULED")
                return None

            return await service.mark_queued(command.id, envelope.tenant_id)

    async def _deliver(self, envelope: CommandEnvelope) -> None:
        device = await self._devices.get_device(envelope.device_id, envelope.tenant_id)
        if device is None:
            raise DeviceNotFound(envelope.device_id)

        adapter = self._adapters.get(device.protocol)
        logger.info(f"Sending command {envelope.id} via {device.protocol.value}")
        await adapter.send_command(device.device_key, format_command(device.protocol, envelope))

    async def _raise_failure_alarm(self, envelope: CommandEnvelope, error: str) -> None:
        try:
            await self._backbone.publish(
                self.settings.alarm_topic,
                failure_alarm(envelope, error),
                key=envelope.device_id,
            )
        except PublishError as e:
            # Command is already FAILED; the alarm is best effort
            logger.error(f"Failed to raise alarm for command {envelope.id}: {e}")
            return
        self.alarms_raised += 1
        logger.warning(f"Raised COMMAND_FAILURE alarm for urgent command {envelope.id}")

    # =========================================================================
    # Acknowledgements
    # =========================================================================

    async def acknowledge(self, command_id: UUID, tenant_id: str) -> DeviceCommand:
        """Record a device acknowledgement for a sent command."""
        async with self._service_scope() as service:
            command = await service.mark_acked(command_id, tenant_id)
        logger.info(f"Command {command_id} acknowledged by device {command.device_id}")
        return command

    def get_stats(self) -> dict:
        return {
            "running": self.is_running,
            "sent": self.commands_sent,
            "failed": self.commands_failed,
            "skipped": self.commands_skipped,
            "alarms": self.alarms_raised,
        }
