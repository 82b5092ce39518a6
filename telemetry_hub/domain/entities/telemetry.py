"""
Canonical telemetry entities.

Every protocol adapter converts its native payloads into a StandardTelemetry
record before it is published to the backbone.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from .base import to_epoch_ms, utcnow


class TelemetryProtocol(str, Enum):
    """Wire protocols an adapter can be registered for."""
    MQTT = "mqtt"
    HTTP = "http"
    COAP = "coap"
    LORAWAN = "lorawan"
    MODBUS = "modbus"
    WEBSOCKET = "websocket"
    BLE = "ble"


# Epoch values above this are taken as milliseconds (year 5138 in seconds)
_EPOCH_MS_THRESHOLD = 100_000_000_000


@dataclass
class StandardTelemetry:
    """
    Normalized device telemetry record.

    device_key, protocol and timestamp are always set; timestamp falls back
    to ingestion time when the device did not supply one.
    """
    device_id: str
    device_key: str
    protocol: TelemetryProtocol
    data: Dict[str, Any] = field(default_factory=dict)
    tenant_id: Optional[str] = None

    # Common sensor values extracted from data
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    battery_level: Optional[float] = None
    signal_strength: Optional[float] = None

    timestamp: Optional[datetime] = None
    received_at: Optional[int] = None  # epoch ms
    metadata: Dict[str, Any] = field(default_factory=dict)
    raw_payload: Any = None

    def __post_init__(self):
        if isinstance(self.protocol, str):
            self.protocol = TelemetryProtocol(self.protocol)
        if not self.device_key:
            self.device_key = self.device_id or "unknown"
        if not self.device_id:
            self.device_id = self.device_key
        if self.timestamp is None:
            self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the JSON shape published on the telemetry topics."""
        payload = {
            "deviceId": self.device_id,
            "deviceKey": self.device_key,
            "tenantId": self.tenant_id,
            "data": self.data,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "pressure": self.pressure,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "batteryLevel": self.battery_level,
            "signalStrength": self.signal_strength,
            "timestamp": self.timestamp.isoformat(),
            "receivedAt": self.received_at,
            "protocol": self.protocol.value,
            "metadata": self.metadata,
        }
        if self.raw_payload is not None:
            payload["rawPayload"] = self.raw_payload
        return payload


def coerce_timestamp(value: Any) -> Optional[datetime]:
    """
    Best-effort conversion of a device timestamp.

    Accepts datetimes, ISO-8601 strings, epoch seconds and epoch milliseconds.

    Returns:
        Timezone-aware datetime, or None if the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return coerce_timestamp(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


def as_number(value: Any) -> Optional[float]:
    """Numeric value as float; None for anything else (including bools)."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _field_for_key(key: str) -> Optional[str]:
    """Map a payload key onto one of the common telemetry fields."""
    lower = key.lower()
    if "temp" in lower or lower == "t":
        return "temperature"
    if "hum" in lower or lower == "h":
        return "humidity"
    if "press" in lower or lower == "p":
        return "pressure"
    if "bat" in lower:
        return "battery_level"
    if lower == "rssi" or "signal" in lower:
        return "signal_strength"
    if lower in ("lat", "latitude"):
        return "latitude"
    if lower in ("lon", "lng", "longitude"):
        return "longitude"
    return None


def extract_common_fields(payload: Any) -> Dict[str, float]:
    """
    Find common sensor values anywhere in a (possibly nested) payload.

    Keys are matched by family (``temp``, ``hum``, ``press``, ``bat``,
    ``rssi``/``signal``, ``lat``/``lon``). Values that are not numeric are
    skipped. Later matches win, as they would in a flat scan.
    """
    result: Dict[str, float] = {}
    if not isinstance(payload, Mapping):
        return result

    # Depth-first with an explicit stack so nesting depth is unbounded
    stack = [iter(payload.items())]
    while stack:
        try:
            key, value = next(stack[-1])
        except StopIteration:
            stack.pop()
            continue

        if not isinstance(key, str):
            continue
        if isinstance(value, Mapping):
            stack.append(iter(value.items()))
            continue

        target = _field_for_key(key)
        if target is not None:
            number = as_number(value)
            if number is not None:
                result[target] = number

    return result


def received_now() -> int:
    """Ingestion time in epoch milliseconds."""
    return to_epoch_ms(utcnow())
