"""
Domain entities.
"""
from .base import Entity, to_epoch_ms, utcnow
from .command import (
    CANCELLABLE_STATUSES,
    CANCELLED_MESSAGE,
    TERMINAL_STATUSES,
    CommandEnvelope,
    CommandPriority,
    CommandStatus,
    DeviceCommand,
)
from .telemetry import (
    StandardTelemetry,
    TelemetryProtocol,
    as_number,
    coerce_timestamp,
    extract_common_fields,
    received_now,
)

__all__ = [
    "Entity",
    "to_epoch_ms",
    "utcnow",
    # Commands
    "CANCELLABLE_STATUSES",
    "CANCELLED_MESSAGE",
    "TERMINAL_STATUSES",
    "CommandEnvelope",
    "CommandPriority",
    "CommandStatus",
    "DeviceCommand",
    # Telemetry
    "StandardTelemetry",
    "TelemetryProtocol",
    "as_number",
    "coerce_timestamp",
    "extract_common_fields",
    "received_now",
]
