# Backbone-driven background workers
from .command_worker import CommandWorker, ServiceScope
from .telemetry_publisher import TelemetryPublisher

__all__ = [
    "CommandWorker",
    "ServiceScope",
    "TelemetryPublisher",
]
