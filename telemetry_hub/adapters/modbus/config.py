"""
Modbus device configuration.

Descriptors come from a YAML/JSON file or the ``MODBUS_DEVICES`` JSON string.
Keys may be camelCase (``deviceKey``, ``slaveId``, ``pollInterval``) or
snake_case.
"""
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ...config import ModbusSettings
from .registers import RegisterDefinition

logger = logging.getLogger(__name__)


class Transport(str, Enum):
    """Physical link to the device."""
    TCP = "TCP"
    RTU = "RTU"


# pyserial parity codes
PARITY_CODES = {"none": "N", "even": "E", "odd": "O"}


@dataclass
class ModbusDeviceConfig:
    """Connection and register map for one polled device."""
    id: str
    device_key: str
    name: str
    transport: Transport = Transport.TCP
    slave_id: int = 1
    poll_interval: int = 5000  # milliseconds
    timeout: int = 5000  # milliseconds, per request
    tenant_id: Optional[str] = None

    # TCP
    host: Optional[str] = None
    port: int = 502

    # RTU
    serial_port: Optional[str] = None
    baud_rate: int = 9600
    parity: str = "none"
    data_bits: int = 8
    stop_bits: int = 1

    registers: List[RegisterDefinition] = field(default_factory=list)

    def __post_init__(self):
        if isinstance(self.transport, str):
            self.transport = Transport(self.transport.upper())
        if self.transport == Transport.TCP and not self.host:
            raise ValueError(f"Modbus device {self.id}: TCP transport needs a host")
        if self.transport == Transport.RTU and not self.serial_port:
            raise ValueError(f"Modbus device {self.id}: RTU transport needs a serial port")
        if self.parity not in PARITY_CODES:
            raise ValueError(f"Modbus device {self.id}: unknown parity {self.parity!r}")
        if self.poll_interval <= 0:
            raise ValueError(f"Modbus device {self.id}: poll interval must be positive")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval / 1000

    @property
    def address(self) -> str:
        if self.transport == Transport.TCP:
            return f"{self.host}:{self.port}"
        return str(self.serial_port)


def _get(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def parse_register(data: Dict[str, Any]) -> RegisterDefinition:
    """Build a RegisterDefinition from a descriptor dict."""
    return RegisterDefinition(
        name=data["name"],
        register_type=_get(data, "registerType", "register_type", default="holding"),
        address=int(data["address"]),
        data_type=_get(data, "dataType", "data_type", default="uint16"),
        length=_get(data, "length"),
        scale=_get(data, "scale"),
        offset=_get(data, "offset"),
        unit=_get(data, "unit"),
    )


def parse_device(data: Dict[str, Any]) -> ModbusDeviceConfig:
    """Build a ModbusDeviceConfig from a descriptor dict."""
    device_id = str(data["id"])
    return ModbusDeviceConfig(
        id=device_id,
        device_key=str(_get(data, "deviceKey", "device_key", default=device_id)),
        name=str(_get(data, "name", default=device_id)),
        transport=_get(data, "type", "transport", default="TCP"),
        slave_id=int(_get(data, "slaveId", "slave_id", "unitId", default=1)),
        poll_interval=int(_get(data, "pollInterval", "poll_interval", default=5000)),
        timeout=int(_get(data, "timeout", default=5000)),
        tenant_id=_get(data, "tenantId", "tenant_id"),
        host=_get(data, "ip", "host"),
        port=int(_get(data, "port", default=502)),
        serial_port=_get(data, "serialPort", "serial_port"),
        baud_rate=int(_get(data, "baudRate", "baud_rate", default=9600)),
        parity=str(_get(data, "parity", default="none")).lower(),
        data_bits=int(_get(data, "dataBits", "data_bits", default=8)),
        stop_bits=int(_get(data, "stopBits", "stop_bits", default=1)),
        registers=[parse_register(r) for r in _get(data, "registers", default=[])],
    )


def parse_devices(entries: Any) -> List[ModbusDeviceConfig]:
    """
    Parse a list of device descriptors.

    Accepts a bare list or a mapping with a ``devices`` key. Invalid
    descriptors are logged and skipped.
    """
    if isinstance(entries, dict):
        entries = entries.get("devices", [])
    if not isinstance(entries, list):
        logger.error("Modbus device configuration must be a list of devices")
        return []

    devices = []
    for entry in entries:
        try:
            devices.append(parse_device(entry))
        except (KeyError, TypeError, ValueError) as e:
            name = entry.get("id", "unknown") if isinstance(entry, dict) else "unknown"
            logger.error(f"Failed to parse Modbus device {name}: {e}")
    return devices


def load_from_file(file_path: Path) -> List[ModbusDeviceConfig]:
    """
    Load device descriptors from a YAML or JSON file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        yaml.YAMLError: If the file contains invalid YAML.
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Modbus device file not found: {file_path}")

    logger.info(f"Loading Modbus devices from {file_path}")

    with open(file_path, "r", encoding="utf-8") as f:
        if file_path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if not data:
        logger.warning(f"Empty Modbus device file: {file_path}")
        return []

    return parse_devices(data)


def load_device_configs(settings: ModbusSettings) -> List[ModbusDeviceConfig]:
    """Load devices from the configured file, else from the inline JSON string."""
    if settings.devices_file:
        return load_from_file(Path(settings.devices_file))

    if settings.devices:
        try:
            data = json.loads(settings.devices)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse MODBUS_DEVICES: {e}")
            return []
        return parse_devices(data)

    return []
