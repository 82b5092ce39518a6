"""
Topic definitions and partition assignment for the backbone.
"""
import hashlib
from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class TopicDefinition:
    """A topic and its fixed partition count."""
    name: str
    partitions: int
    replication_factor: int = 1

    def __post_init__(self):
        if self.partitions < 1:
            raise ValueError(f"Topic {self.name} must have at least one partition")


def partition_for_key(key: str, partitions: int) -> int:
    """
    Stable partition for a message key.

    Uses a digest rather than ``hash()`` so every process maps a key to the
    same partition.
    """
    digest = hashlib.md5(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % partitions


# Topic set provisioned at startup
TELEMETRY_RAW = "telemetry.device.raw"
TELEMETRY_VALIDATED = "telemetry.device.validated"
TELEMETRY_PROCESSED = "telemetry.device.processed"
DEVICE_COMMANDS = "device.commands"
DEVICE_COMMANDS_RETRY = "device.commands.retry"

DEFAULT_TOPICS: List[TopicDefinition] = [
    # Telemetry
    TopicDefinition(TELEMETRY_RAW, 10),
    TopicDefinition(TELEMETRY_VALIDATED, 10),
    TopicDefinition(TELEMETRY_PROCESSED, 10),

    # Device lifecycle
    TopicDefinition("device.lifecycle.created", 3),
    TopicDefinition("device.lifecycle.updated", 3),
    TopicDefinition("device.lifecycle.deleted", 3),
    TopicDefinition("device.connectivity.online", 5),
    TopicDefinition("device.connectivity.offline", 5),

    # Alarms
    TopicDefinition("alarms.created", 5),
    TopicDefinition("alarms.updated", 3),
    TopicDefinition("alarms.acknowledged", 3),
    TopicDefinition("alarms.cleared", 3),

    # Rules
    TopicDefinition("rules.input", 10),
    TopicDefinition("rules.output", 5),

    # Notifications
    TopicDefinition("notifications.email", 3),
    TopicDefinition("notifications.push", 3),

    # Audit
    TopicDefinition("audit.user.actions", 5),
    TopicDefinition("audit.api.requests", 5),

    # Commands
    TopicDefinition(DEVICE_COMMANDS, 5),
    TopicDefinition(DEVICE_COMMANDS_RETRY, 3),
]
