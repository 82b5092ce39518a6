"""
Command Service for Telemetry Hub.

Creates device commands, publishes them to the backbone and tracks their
lifecycle.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from ...config import CommandSettings
from ...domain.entities.command import (
    CommandPriority,
    CommandStatus,
    DeviceCommand,
)
from ...domain.exceptions import CommandNotFound, DeviceNotFound, PublishError, QuotaExceeded
from ...infrastructure.messaging.redis_streams import MessageBackbone
from ..interfaces import CommandStore, DeviceRegistry, UsageLimiter

logger = logging.getLogger(__name__)


class CreateCommandRequest(BaseModel):
    """Request to create a device command."""
    device_id: str = Field(..., min_length=1)
    command_type: str = Field(..., min_length=1, max_length=100)
    params: Dict[str, Any] = Field(default_factory=dict)
    priority: Optional[CommandPriority] = None
    timeout: Optional[int] = Field(default=None, gt=0, description='Milliseconds')
    scheduled_for: Optional[datetime] = None


class CommandService:
    """
    Application service for device commands.

    Admission (device lookup and quota) happens before anything is written;
    a command is persisted first and then published.
    """

    def __init__(
        self,
        command_store: CommandStore,
        device_registry: DeviceRegistry,
        usage_limiter: UsageLimiter,
        backbone: MessageBackbone,
        settings: Optional[CommandSettings] = None,
    ):
        self._store = command_store
        self._devices = device_registry
        self._limiter = usage_limiter
        self._backbone = backbone
        self._settings = settings or CommandSettings()

    # =========================================================================
    # Command Creation
    # =========================================================================

    async def create_command(
        self,
        request: CreateCommandRequest,
        user_id: str,
        tenant_id: str,
    ) -> DeviceCommand:
        """
        Create and dispatch a device command.

        Args:
            request: Validated command request.
            user_id: User issuing the command.
            tenant_id: Tenant the device must belong to.

        Returns:
            The persisted DeviceCommand.

        Raises:
            DeviceNotFound: If the device is unknown or owned by another tenant.
            QuotaExceeded: If the usage limiter denies the command.
            PublishError: If the backbone does not accept the envelope. The
                persisted command is marked FAILED and committed before this
                propagates.
        """
        device = await self._devices.get_device(request.device_id, tenant_id)
        if device is None:
            raise DeviceNotFound(request.device_id)

        resource = self._settings.quota_resource
        if not await self._limiter.check(tenant_id, user_id, resource):
            raise QuotaExceeded(resource, tenant_id)

        scheduled_for = request.scheduled_for
        if scheduled_for is not None and scheduled_for.tzinfo is None:
            scheduled_for = scheduled_for.replace(tzinfo=timezone.utc)

        command = DeviceCommand(
            device_id=device.id,
            device_key=device.device_key,
            tenant_id=tenant_id,
            user_id=user_id,
            command_type=request.command_type,
            params=request.params,
            priority=request.priority or CommandPriority.NORMAL,
            timeout=request.timeout or self._settings.default_timeout_ms,
            retries=self._settings.default_retries,
            status=CommandStatus.SCHEDULED if scheduled_for else CommandStatus.PENDING,
            scheduled_for=scheduled_for,
        )

        created = await self._store.create(command)
        # Visible to the execution worker before its envelope can be read
        await self._store.commit()

        key = created.device_id if self._settings.partition_by_device else None
        try:
            await self._backbone.publish(self._settings.topic, created.to_envelope(), key=key)
        except PublishError as e:
            await self._mark_dispatch_failed(created, e)
            raise

        await self._limiter.record(tenant_id, user_id, resource)

        logger.info(
            f"Created command {created.id}: {created.command_type} for device {created.device_id} "
            f"({created.status.value})"
        )

        return created

    async def _mark_dispatch_failed(self, command: DeviceCommand, error: PublishError) -> None:
        """Compensate for a command that was stored but never reached the backbone."""
        logger.error(f"Failed to publish command {command.id}: {error.message}")
        command.transition_to(CommandStatus.FAILED, f"Dispatch failed: {error.message}")
        await self._store.update(command)
        await self._store.commit()

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel_command(self, command_id: UUID, tenant_id: str) -> DeviceCommand:
        """
        Cancel a command that has not been sent yet.

        Raises:
            CommandNotFound: If the command does not exist for the tenant.
            InvalidStateTransition: If the command is past QUEUED. Nothing is
                written in that case.
        """
        command = await self.get_command_status(command_id, tenant_id)

        command.cancel()
        await self._store.update(command)

        logger.info(f"Cancelled command {command_id}")
        return command

    # =========================================================================
    # Command Retrieval
    # =========================================================================

    async def get_command_status(self, command_id: UUID, tenant_id: str) -> DeviceCommand:
        """
        Get a command by ID.

        Raises:
            CommandNotFound: If the command does not exist for the tenant.
        """
        command = await self._store.get_by_id(command_id, tenant_id)
        if command is None:
            raise CommandNotFound(command_id)
        return command

    async def get_device_commands(
        self,
        device_id: str,
        tenant_id: str,
        limit: int = 50,
    ) -> List[DeviceCommand]:
        """Get recent commands for a device, newest first."""
        return await self._store.list_by_device(device_id, tenant_id, limit=limit)

    async def get_user_commands(
        self,
        user_id: str,
        tenant_id: str,
        limit: int = 100,
    ) -> List[DeviceCommand]:
        """Get recent commands issued by a user, newest first."""
        return await self._store.list_by_user(user_id, tenant_id, limit=limit)

    # =========================================================================
    # Status Updates
    # =========================================================================

    async def _transition(
        self,
        command_id: UUID,
        tenant_id: str,
        target: CommandStatus,
        message: Optional[str] = None,
    ) -> DeviceCommand:
        command = await self.get_command_status(command_id, tenant_id)
        command.transition_to(target, message)
        await self._store.update(command)
        return command

    async def mark_queued(self, command_id: UUID, tenant_id: str) -> DeviceCommand:
        """Mark command as picked up for delivery."""
        return await self._transition(command_id, tenant_id, CommandStatus.QUEUED)

    async def mark_sent(self, command_id: UUID, tenant_id: str) -> DeviceCommand:
        """Mark command as handed to the device."""
        command = await self._transition(command_id, tenant_id, CommandStatus.SENT)
        logger.info(f"Command {command_id} sent to device {command.device_id}")
        return command

    async def mark_acked(self, command_id: UUID, tenant_id: str) -> DeviceCommand:
        """Mark command as acknowledged by the device."""
        return await self._transition(command_id, tenant_id, CommandStatus.ACKED)

    async def mark_failed(self, command_id: UUID, tenant_id: str, error_message: str) -> DeviceCommand:
        """Mark command as failed."""
        command = await self._transition(command_id, tenant_id, CommandStatus.FAILED, error_message)
        logger.warning(f"Command {command_id} failed: {error_message}")
        return command

    async def mark_timeout(self, command_id: UUID, tenant_id: str) -> DeviceCommand:
        """Mark command as timed out."""
        command = await self._transition(
            command_id, tenant_id, CommandStatus.TIMEOUT, "Command timed out"
        )
        logger.warning(f"Command {command_id} timed out")
        return command
