# Messaging Infrastructure - Redis Streams backbone
from .consumer import (
    BackboneMessage,
    ConsumerGroup,
    HandlerOutcome,
    MessageHandler,
    OutcomeStatus,
    PartitionWorker,
    RedeliveryPolicy,
    run_handler,
)
from .redis_streams import MessageBackbone, PublishResult
from .topics import (
    DEFAULT_TOPICS,
    DEVICE_COMMANDS,
    DEVICE_COMMANDS_RETRY,
    TELEMETRY_PROCESSED,
    TELEMETRY_RAW,
    TELEMETRY_VALIDATED,
    TopicDefinition,
    partition_for_key,
)

__all__ = [
    # Backbone
    "MessageBackbone",
    "PublishResult",
    # Consumption
    "BackboneMessage",
    "ConsumerGroup",
    "HandlerOutcome",
    "MessageHandler",
    "OutcomeStatus",
    "PartitionWorker",
    "RedeliveryPolicy",
    "run_handler",
    # Topics
    "TopicDefinition",
    "partition_for_key",
    "DEFAULT_TOPICS",
    "TELEMETRY_RAW",
    "TELEMETRY_VALIDATED",
    "TELEMETRY_PROCESSED",
    "DEVICE_COMMANDS",
    "DEVICE_COMMANDS_RETRY",
]
