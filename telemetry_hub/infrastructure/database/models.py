"""
SQLAlchemy models for command persistence.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column

from .connection import Base


class DeviceCommandModel(Base):
    """
    Device commands dispatched through the backbone.
    """
    __tablename__ = "device_commands"

    id: Mapped[UUID] = mapped_column(PGUUID(as_uuid=True), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    device_key: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # Command details
    command_type: Mapped[str] = mapped_column(String(100), nullable=False)
    params: Mapped[Dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="NORMAL")
    timeout: Mapped[int] = mapped_column(Integer, nullable=False, default=30000)
    retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)

    # Status
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING", index=True)
    status_message: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Timing
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_device_commands_device_created", "device_id", "created_at"),
        Index("idx_device_commands_user_created", "user_id", "created_at"),
    )
