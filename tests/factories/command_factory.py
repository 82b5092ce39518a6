"""
Command-related test data factories.
"""
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict
from uuid import uuid4

import factory

from telemetry_hub.application.interfaces import DeviceInfo
from telemetry_hub.domain.entities.command import CommandPriority, CommandStatus, DeviceCommand
from telemetry_hub.domain.entities.telemetry import TelemetryProtocol


class DeviceInfoFactory(factory.Factory):
    """
    Factory for registry entries.

    Usage:
        device = DeviceInfoFactory()
        device = DeviceInfoFactory(protocol=TelemetryProtocol.MQTT)
    """

    class Meta:
        model = DeviceInfo

    id = factory.Sequence(lambda n: f"device-{n}")
    device_key = factory.LazyAttribute(lambda o: f"{o.id}-key")
    tenant_id = "tenant-1"
    protocol = TelemetryProtocol.MODBUS


class CommandFactory(factory.Factory):
    """
    Factory for DeviceCommand entities.

    Usage:
        command = CommandFactory()
        command = CommandFactory(command_type="set_setpoint")
    """

    class Meta:
        model = DeviceCommand

    id = factory.LazyFunction(uuid4)
    device_id = factory.Sequence(lambda n: f"device-{n}")
    device_key = factory.LazyAttribute(lambda o: f"{o.device_id}-key")
    tenant_id = "tenant-1"
    user_id = "user-1"
    command_type = factory.Iterator([
        "set_setpoint",
        "set_relay",
        "reboot",
    ])
    priority = CommandPriority.NORMAL
    timeout = 30000
    retries = 3
    status = CommandStatus.PENDING
    created_at = factory.LazyFunction(lambda: datetime.now(timezone.utc))

    @factory.lazy_attribute
    def params(self) -> Dict[str, Any]:
        params_by_type = {
            "set_setpoint": {"address": 10, "value": random.randint(150, 300)},
            "set_relay": {"address": 1, "value": True, "registerType": "coil"},
            "reboot": {},
        }
        return params_by_type.get(self.command_type, {})


class ScheduledCommandFactory(CommandFactory):
    """Factory for commands scheduled in the future."""

    status = CommandStatus.SCHEDULED
    scheduled_for = factory.LazyFunction(
        lambda: datetime.now(timezone.utc) + timedelta(hours=1)
    )


class SentCommandFactory(CommandFactory):
    """Factory for commands already handed to the device."""

    status = CommandStatus.SENT
    sent_at = factory.LazyFunction(lambda: datetime.now(timezone.utc))
