"""
Device command entities.

Commands represent remote control operations dispatched to devices
through the message backbone.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional
from uuid import UUID

from ..exceptions import InvalidStateTransition
from .base import Entity, to_epoch_ms, utcnow


DEFAULT_TIMEOUT_MS = 30000
DEFAULT_RETRIES = 3
CANCELLED_MESSAGE = "Cancelled by user"


class CommandPriority(str, Enum):
    """Command dispatch priority."""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    URGENT = "URGENT"


class CommandStatus(str, Enum):
    """Command lifecycle status."""
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    QUEUED = "QUEUED"
    SENT = "SENT"
    ACKED = "ACKED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


_TRANSITIONS: Dict[CommandStatus, FrozenSet[CommandStatus]] = {
    CommandStatus.PENDING: frozenset({CommandStatus.QUEUED, CommandStatus.FAILED}),
    CommandStatus.SCHEDULED: frozenset({CommandStatus.QUEUED, CommandStatus.FAILED}),
    CommandStatus.QUEUED: frozenset({CommandStatus.SENT, CommandStatus.FAILED}),
    CommandStatus.SENT: frozenset({
        CommandStatus.ACKED,
        CommandStatus.FAILED,
        CommandStatus.TIMEOUT,
    }),
    CommandStatus.ACKED: frozenset(),
    CommandStatus.FAILED: frozenset(),
    CommandStatus.TIMEOUT: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({
    CommandStatus.PENDING,
    CommandStatus.QUEUED,
    CommandStatus.SCHEDULED,
})

TERMINAL_STATUSES = frozenset({
    CommandStatus.ACKED,
    CommandStatus.FAILED,
    CommandStatus.TIMEOUT,
})


@dataclass
class DeviceCommand(Entity):
    """
    A command to be sent to a device.

    The dispatcher creates and cancels commands; the execution worker moves
    them through QUEUED and SENT. Every status change goes through
    ``transition_to`` so illegal moves leave the entity untouched.
    """
    device_id: str = ""
    device_key: str = ""
    tenant_id: str = ""
    user_id: str = ""
    command_type: str = ""
    params: Dict[str, Any] = field(default_factory=dict)
    priority: CommandPriority = CommandPriority.NORMAL
    timeout: int = DEFAULT_TIMEOUT_MS  # milliseconds
    retries: int = DEFAULT_RETRIES  # declared budget, no executor consumes it yet

    status: CommandStatus = CommandStatus.PENDING
    status_message: Optional[str] = None
    scheduled_for: Optional[datetime] = None

    sent_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.priority, str):
            self.priority = CommandPriority(self.priority)
        if isinstance(self.status, str):
            self.status = CommandStatus(self.status)

    def can_transition_to(self, target: CommandStatus) -> bool:
        """Check if the state machine allows moving to target."""
        return target in _TRANSITIONS[self.status]

    def transition_to(self, target: CommandStatus, message: Optional[str] = None) -> None:
        """
        Move the command to a new status.

        Raises:
            InvalidStateTransition: If the move is not allowed. The entity is
                not modified in that case.
        """
        if not self.can_transition_to(target):
            raise InvalidStateTransition("DeviceCommand", self.status.value, target.value)

        now = utcnow()
        self.status = target
        self.status_message = message
        self.updated_at = now

        if target == CommandStatus.SENT:
            self.sent_at = now
        elif target in TERMINAL_STATUSES:
            self.completed_at = now

    def cancel(self) -> None:
        """Cancel a command that has not been handed to the device yet."""
        if self.status not in CANCELLABLE_STATUSES:
            raise InvalidStateTransition(
                "DeviceCommand",
                self.status.value,
                CommandStatus.FAILED.value,
                message=f"Cannot cancel command in status {self.status.value}",
            )
        self.transition_to(CommandStatus.FAILED, CANCELLED_MESSAGE)

    def is_cancellable(self) -> bool:
        return self.status in CANCELLABLE_STATUSES

    def is_completed(self) -> bool:
        """Check if command is in a terminal state."""
        return self.status in TERMINAL_STATUSES

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """Check if a scheduled command may be dispatched."""
        if self.scheduled_for is None:
            return True
        return to_epoch_ms(self.scheduled_for) <= to_epoch_ms(now or utcnow())

    def to_envelope(self) -> Dict[str, Any]:
        """Build the wire payload published on the commands topic."""
        envelope = {
            "id": str(self.id),
            "deviceId": self.device_id,
            "deviceKey": self.device_key,
            "tenantId": self.tenant_id,
            "userId": self.user_id,
            "commandType": self.command_type,
            "params": self.params,
            "priority": self.priority.value,
            "timeout": self.timeout,
            "retries": self.retries,
            "createdAt": to_epoch_ms(self.created_at),
        }
        if self.scheduled_for is not None:
            envelope["scheduledFor"] = to_epoch_ms(self.scheduled_for)
        return envelope


@dataclass
class CommandEnvelope:
    """
    Command payload as received from the backbone.
    """
    id: UUID
    device_id: str
    device_key: str
    tenant_id: str
    user_id: str
    command_type: str
    params: Dict[str, Any]
    priority: CommandPriority
    timeout: int
    retries: int
    created_at: int
    scheduled_for: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandEnvelope":
        """Create from a decoded backbone message value."""
        return cls(
            id=UUID(str(data["id"])),
            device_id=data["deviceId"],
            device_key=data.get("deviceKey", ""),
            tenant_id=data.get("tenantId", ""),
            user_id=data.get("userId", ""),
            command_type=data["commandType"],
            params=data.get("params") or {},
            priority=CommandPriority(data.get("priority", CommandPriority.NORMAL.value)),
            timeout=int(data.get("timeout", DEFAULT_TIMEOUT_MS)),
            retries=int(data.get("retries", DEFAULT_RETRIES)),
            created_at=int(data.get("createdAt", 0)),
            scheduled_for=data.get("scheduledFor"),
        )
