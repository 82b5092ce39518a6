"""
Repository for device commands.

Handles command persistence and tenant-scoped lookups.
"""
import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy import and_, desc, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import DeviceCommandModel
from ....domain.entities.command import CommandPriority, CommandStatus, DeviceCommand

logger = logging.getLogger(__name__)


class CommandRepository:
    """
    Repository for device command operations.

    Every read is scoped by tenant so one tenant can never see another's
    commands.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    async def get_by_id(self, command_id: UUID, tenant_id: str) -> Optional[DeviceCommand]:
        """
        Get a command by ID within a tenant.

        Args:
            command_id: Command UUID.
            tenant_id: Owning tenant.

        Returns:
            DeviceCommand if found, None otherwise.
        """
        query = select(DeviceCommandModel).where(
            and_(
                DeviceCommandModel.id == command_id,
                DeviceCommandModel.tenant_id == tenant_id,
            )
        )
        result = await self._session.execute(query)
        model = result.scalar_one_or_none()

        return self._model_to_entity(model) if model else None

    async def create(self, command: DeviceCommand) -> DeviceCommand:
        """
        Create a new command.

        Args:
            command: DeviceCommand entity to create.

        Returns:
            Created DeviceCommand entity.
        """
        model = DeviceCommandModel(
            id=command.id,
            device_id=command.device_id,
            device_key=command.device_key,
            tenant_id=command.tenant_id,
            user_id=command.user_id,
            command_type=command.command_type,
            params=command.params,
            priority=command.priority.value,
            timeout=command.timeout,
            retries=command.retries,
            status=command.status.value,
            status_message=command.status_message,
            scheduled_for=command.scheduled_for,
            created_at=command.created_at,
        )

        self._session.add(model)
        await self._session.flush()

        logger.info(f"Created command {command.id} for device {command.device_id}: {command.command_type}")

        return command

    async def update(self, command: DeviceCommand) -> DeviceCommand:
        """
        Persist the mutable fields of a command.

        Args:
            command: DeviceCommand entity with updated values.

        Returns:
            Updated DeviceCommand entity.
        """
        stmt = (
            update(DeviceCommandModel)
            .where(DeviceCommandModel.id == command.id)
            .values(
                status=command.status.value,
                status_message=command.status_message,
                updated_at=command.updated_at,
                sent_at=command.sent_at,
                completed_at=command.completed_at,
            )
        )

        await self._session.execute(stmt)
        return command

    async def commit(self) -> None:
        """
        Commit the current transaction.

        Called before a command is published so consumers in other sessions
        can load it.
        """
        await self._session.commit()

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_by_device(
        self,
        device_id: str,
        tenant_id: str,
        limit: int = 50,
    ) -> List[DeviceCommand]:
        """
        Get recent commands for a device, newest first.

        Args:
            device_id: Device identifier.
            tenant_id: Owning tenant.
            limit: Maximum commands to return.
        """
        query = (
            select(DeviceCommandModel)
            .where(
                and_(
                    DeviceCommandModel.device_id == device_id,
                    DeviceCommandModel.tenant_id == tenant_id,
                )
            )
            .order_by(desc(DeviceCommandModel.created_at))
            .limit(limit)
        )

        result = await self._session.execute(query)
        return [self._model_to_entity(m) for m in result.scalars().all()]

    async def list_by_user(
        self,
        user_id: str,
        tenant_id: str,
        limit: int = 100,
    ) -> List[DeviceCommand]:
        """
        Get recent commands issued by a user, newest first.
        """
        query = (
            select(DeviceCommandModel)
            .where(
                and_(
                    DeviceCommandModel.user_id == user_id,
                    DeviceCommandModel.tenant_id == tenant_id,
                )
            )
            .order_by(desc(DeviceCommandModel.created_at))
            .limit(limit)
        )

        result = await self._session.execute(query)
        return [self._model_to_entity(m) for m in result.scalars().all()]

    # =========================================================================
    # Helpers
    # =========================================================================

    def _model_to_entity(self, model: DeviceCommandModel) -> DeviceCommand:
        """Convert ORM model to domain entity."""
        return DeviceCommand(
            id=model.id,
            device_id=model.device_id,
            device_key=model.device_key,
            tenant_id=model.tenant_id,
            user_id=model.user_id,
            command_type=model.command_type,
            params=model.params or {},
            priority=CommandPriority(model.priority),
            timeout=model.timeout,
            retries=model.retries,
            status=CommandStatus(model.status),
            status_message=model.status_message,
            scheduled_for=model.scheduled_for,
            created_at=model.created_at,
            updated_at=model.updated_at,
            sent_at=model.sent_at,
            completed_at=model.completed_at,
        )
