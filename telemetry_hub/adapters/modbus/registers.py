"""
Register map definitions and value decoding for Modbus devices.

Register words are big-endian. Multi-word values take the high word first.
"""
import struct
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Union


class RegisterType(str, Enum):
    """Modbus data table a register lives in."""
    HOLDING = "holding"
    INPUT = "input"
    COIL = "coil"
    DISCRETE = "discrete"

    @property
    def is_bit(self) -> bool:
        return self in (RegisterType.COIL, RegisterType.DISCRETE)


class DataType(str, Enum):
    """How raw register words are interpreted."""
    INT16 = "int16"
    UINT16 = "uint16"
    INT32 = "int32"
    UINT32 = "uint32"
    FLOAT = "float"
    BOOL = "bool"


# struct format and byte width per numeric type
_FORMATS = {
    DataType.INT16: (">h", 2),
    DataType.UINT16: (">H", 2),
    DataType.INT32: (">i", 4),
    DataType.UINT32: (">I", 4),
    DataType.FLOAT: (">f", 4),
}

Value = Union[int, float, bool]


@dataclass
class RegisterDefinition:
    """
    One named value in a device's register map.
    """
    name: str
    register_type: RegisterType
    address: int
    data_type: DataType = DataType.UINT16
    length: Optional[int] = None
    scale: Optional[float] = None
    offset: Optional[float] = None
    unit: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.register_type, str):
            self.register_type = RegisterType(self.register_type.lower())
        if isinstance(self.data_type, str):
            self.data_type = DataType(self.data_type.lower())
        if self.length is None:
            self.length = default_length(self.data_type)
        if self.address < 0 or self.address > 0xFFFF:
            raise ValueError(f"Register {self.name}: address {self.address} out of range")
        if self.length < 1:
            raise ValueError(f"Register {self.name}: length must be at least 1")


def default_length(data_type: DataType) -> int:
    """Number of 16-bit words a data type occupies."""
    if data_type in _FORMATS:
        return _FORMATS[data_type][1] // 2
    return 1


def apply_transform(value: Union[int, float], scale: Optional[float], offset: Optional[float]) -> Union[int, float]:
    """Apply the linear transform ``raw * scale + offset``; unset terms are skipped."""
    if scale:
        value = value * scale
    if offset:
        value = value + offset
    return value


def decode_bytes(
    buffer: bytes,
    data_type: Union[DataType, str],
    scale: Optional[float] = None,
    offset: Optional[float] = None,
) -> Value:
    """
    Decode a big-endian register buffer.

    Args:
        buffer: Raw register bytes as received (two bytes per register).
        data_type: Interpretation of the bytes.
        scale: Optional multiplier.
        offset: Optional additive offset, applied after scale.

    Returns:
        Decoded value. ``bool`` ignores scale and offset.

    Raises:
        ValueError: If the buffer is too short for the data type.
    """
    data_type = DataType(data_type)

    if data_type == DataType.BOOL:
        if len(buffer) < 2:
            raise ValueError(f"bool needs 2 bytes, got {len(buffer)}")
        return struct.unpack(">H", buffer[:2])[0] != 0

    fmt, width = _FORMATS[data_type]
    if len(buffer) < width:
        raise ValueError(f"{data_type.value} needs {width} bytes, got {len(buffer)}")

    raw = struct.unpack(fmt, buffer[:width])[0]
    return apply_transform(raw, scale, offset)


def decode_registers(
    words: Sequence[int],
    data_type: Union[DataType, str],
    scale: Optional[float] = None,
    offset: Optional[float] = None,
) -> Value:
    """Decode a list of 16-bit register values (first word most significant)."""
    buffer = struct.pack(f">{len(words)}H", *(w & 0xFFFF for w in words))
    return decode_bytes(buffer, data_type, scale, offset)


def unpack_bits(data: bytes, count: int) -> List[bool]:
    """Unpack coil/discrete status bytes, least significant bit first."""
    bits = []
    for byte in data:
        for i in range(8):
            bits.append(bool(byte >> i & 1))
    return bits[:count]
