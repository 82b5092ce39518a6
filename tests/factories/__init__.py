"""
Test data factories for Telemetry Hub.
"""
from .command_factory import (
    CommandFactory,
    DeviceInfoFactory,
    ScheduledCommandFactory,
    SentCommandFactory,
)
from .telemetry_factory import ModbusTelemetryFactory, TelemetryFactory

__all__ = [
    "CommandFactory",
    "DeviceInfoFactory",
    "ScheduledCommandFactory",
    "SentCommandFactory",
    "TelemetryFactory",
    "ModbusTelemetryFactory",
]
