"""
Domain Exceptions - Custom exceptions for domain-specific errors.
"""
from typing import Any, Dict, Optional


class DomainException(Exception):
    """
    Base exception for all domain-related errors.

    All domain exceptions should inherit from this class to allow
    for consistent error handling across the application.
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            'error': self.code,
            'message': self.message,
            'details': self.details
        }


class EntityNotFoundException(DomainException):
    """Raised when a requested entity cannot be found."""

    def __init__(
        self,
        entity_type: str,
        entity_id: Optional[Any] = None,
        message: Optional[str] = None
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        msg = message or f"{entity_type} not found"
        if entity_id and not message:
            msg = f"{entity_type} with id '{entity_id}' not found"
        super().__init__(
            message=msg,
            code='ENTITY_NOT_FOUND',
            details={'entity_type': entity_type, 'entity_id': str(entity_id) if entity_id else None}
        )


class DeviceNotFound(EntityNotFoundException):
    """Raised when a device is missing or not owned by the tenant."""

    def __init__(self, device_id: Any):
        super().__init__('Device', device_id)


class CommandNotFound(EntityNotFoundException):
    """Raised when a command is missing or belongs to another tenant."""

    def __init__(self, command_id: Any):
        super().__init__('Command', command_id)


class QuotaExceeded(DomainException):
    """Raised when the usage limiter denies an operation."""

    def __init__(
        self,
        resource: str,
        tenant_id: Optional[str] = None,
        message: Optional[str] = None
    ):
        self.resource = resource
        super().__init__(
            message=message or f"Quota exceeded for {resource}",
            code='QUOTA_EXCEEDED',
            details={'resource': resource, 'tenant_id': tenant_id}
        )


class InvalidStateTransition(DomainException):
    """Raised when an entity is asked to move to a state it cannot reach."""

    def __init__(
        self,
        entity_type: str,
        current: str,
        target: str,
        message: Optional[str] = None
    ):
        self.current = current
        self.target = target
        super().__init__(
            message=message or f"Cannot move {entity_type} from {current} to {target}",
            code='INVALID_STATE_TRANSITION',
            details={'entity_type': entity_type, 'current': current, 'target': target}
        )


class CommandDeliveryError(DomainException):
    """Raised when an adapter cannot deliver a command to a device."""

    def __init__(self, device_id: str, message: str):
        self.device_id = device_id
        super().__init__(
            message=message,
            code='COMMAND_DELIVERY_FAILED',
            details={'device_id': device_id}
        )


class PublishError(DomainException):
    """Raised when the message backbone cannot accept a message."""

    def __init__(self, topic: str, message: str):
        self.topic = topic
        super().__init__(
            message=message,
            code='PUBLISH_FAILED',
            details={'topic': topic}
        )


class AdapterNotRegistered(DomainException):
    """Raised when no adapter is registered for a protocol."""

    def __init__(self, protocol: str):
        self.protocol = protocol
        super().__init__(
            message=f"No adapter registered for protocol '{protocol}'",
            code='ADAPTER_NOT_REGISTERED',
            details={'protocol': protocol}
        )


class AdapterConnectionError(ConnectionError):
    """Raised when an adapter cannot reach its devices or broker."""

    def __init__(self, protocol: str, message: str):
        super().__init__(message)
        self.protocol = protocol
        self.message = message


class RegisterReadError(IOError):
    """Raised when a single register cannot be read during a poll cycle."""

    def __init__(self, device_id: str, register: str, reason: str):
        super().__init__(f"Failed to read {register} from {device_id}: {reason}")
        self.device_id = device_id
        self.register = register
        self.reason = reason


class TopicNotFound(EntityNotFoundException):
    """Raised when a topic has not been provisioned on the backbone."""

    def __init__(self, topic: str):
        super().__init__('Topic', topic)


class BackboneConnectionError(ConnectionError):
    """Raised when the backbone broker stays unreachable after retries."""
