# Protocol adapters
from .base import AdapterState, ProtocolAdapter, TelemetrySink
from .registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "AdapterState",
    "ProtocolAdapter",
    "TelemetrySink",
]
