"""
Device simulators for Telemetry Hub testing.

Provides virtual devices that answer Modbus TCP requests for end-to-end
tests without physical hardware.
"""
from .modbus_simulator import ModbusTCPSimulator

__all__ = [
    "ModbusTCPSimulator",
]
