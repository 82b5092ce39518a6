# Modbus TCP/RTU adapter
from .adapter import ModbusAdapter, PollStats
from .client import ModbusClient, ModbusExceptionResponse, crc16
from .config import ModbusDeviceConfig, Transport, load_device_configs, parse_devices
from .registers import DataType, RegisterDefinition, RegisterType, decode_bytes, decode_registers

__all__ = [
    "ModbusAdapter",
    "PollStats",
    "ModbusClient",
    "ModbusExceptionResponse",
    "crc16",
    "ModbusDeviceConfig",
    "Transport",
    "load_device_configs",
    "parse_devices",
    "DataType",
    "RegisterDefinition",
    "RegisterType",
    "decode_bytes",
    "decode_registers",
]
