"""
Minimal async Modbus client.

Implements the read (0x01-0x04) and single-write (0x05, 0x06) function codes
over either Modbus TCP (MBAP header) or Modbus RTU (CRC-16 framing) on a
serial line.
"""
import asyncio
import logging
import struct
from typing import List, Optional

import serial_asyncio

from .config import PARITY_CODES, ModbusDeviceConfig, Transport
from .registers import RegisterDefinition, RegisterType, Value, decode_registers, unpack_bits

logger = logging.getLogger(__name__)


# Modbus function codes
READ_COILS = 0x01
READ_DISCRETE_INPUTS = 0x02
READ_HOLDING_REGISTERS = 0x03
READ_INPUT_REGISTERS = 0x04
WRITE_SINGLE_COIL = 0x05
WRITE_SINGLE_REGISTER = 0x06

READ_FUNCTIONS = {
    RegisterType.COIL: READ_COILS,
    RegisterType.DISCRETE: READ_DISCRETE_INPUTS,
    RegisterType.HOLDING: READ_HOLDING_REGISTERS,
    RegisterType.INPUT: READ_INPUT_REGISTERS,
}

EXCEPTION_NAMES = {
    0x01: "illegal function",
    0x02: "illegal data address",
    0x03: "illegal data value",
    0x04: "server device failure",
    0x06: "server device busy",
}


class ModbusExceptionResponse(Exception):
    """The device answered with a Modbus exception code."""

    def __init__(self, function_code: int, exception_code: int):
        self.function_code = function_code
        self.exception_code = exception_code
        name = EXCEPTION_NAMES.get(exception_code, "unknown")
        super().__init__(
            f"Modbus exception {exception_code} ({name}) for function 0x{function_code:02X}"
        )


def crc16(data: bytes) -> int:
    """CRC-16/MODBUS of a frame."""
    crc = 0xFFFF
    for byte in data:
        crc ^= byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0xA001
            else:
                crc >>= 1
    return crc


class ModbusClient:
    """
    One connection to one Modbus device.

    Requests are serialized with a lock; each one is bounded by the device's
    request timeout.
    """

    def __init__(self, config: ModbusDeviceConfig):
        self.config = config
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()
        self._transaction_id = 0

    @property
    def is_connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self) -> None:
        """
        Open the connection.

        Raises:
            ConnectionError / OSError: If the device cannot be reached.
            asyncio.TimeoutError: If connecting takes longer than the timeout.
        """
        if self.is_connected:
            return

        config = self.config
        if config.transport == Transport.TCP:
            opener = asyncio.open_connection(config.host, config.port)
        else:
            opener = serial_asyncio.open_serial_connection(
                url=config.serial_port,
                baudrate=config.baud_rate,
                parity=PARITY_CODES[config.parity],
                bytesize=config.data_bits,
                stopbits=config.stop_bits,
            )

        self._reader, self._writer = await asyncio.wait_for(opener, timeout=config.timeout_seconds)
        logger.info(f"Connected to Modbus {config.transport.value}: {config.name} ({config.address})")

    async def close(self) -> None:
        """Close the connection gracefully."""
        writer, self._writer, self._reader = self._writer, None, None
        if writer is None:
            return

        try:
            writer.close()
            await asyncio.wait_for(writer.wait_closed(), timeout=5.0)
        except Exception as e:
            logger.debug(f"Error closing Modbus connection to {self.config.name}: {e}")

        logger.info(f"Disconnected Modbus device {self.config.name}")

    # =========================================================================
    # Public operations
    # =========================================================================

    async def read_bits(self, register_type: RegisterType, address: int, count: int) -> List[bool]:
        """Read coils or discrete inputs."""
        function_code = READ_FUNCTIONS[register_type]
        data = await self._read(function_code, address, count)
        return unpack_bits(data, count)

    async def read_words(self, register_type: RegisterType, address: int, count: int) -> List[int]:
        """Read holding or input registers."""
        function_code = READ_FUNCTIONS[register_type]
        data = await self._read(function_code, address, count)
        if len(data) < count * 2:
            raise ValueError(f"Expected {count * 2} register bytes, got {len(data)}")
        return list(struct.unpack(f">{count}H", data[:count * 2]))

    async def read_register(self, register: RegisterDefinition) -> Value:
        """Read and decode one entry of a register map."""
        if register.register_type.is_bit:
            bits = await self.read_bits(register.register_type, register.address, register.length)
            return bits[0]

        words = await self.read_words(register.register_type, register.address, register.length)
        return decode_registers(words, register.data_type, register.scale, register.offset)

    async def write_coil(self, address: int, value: bool) -> None:
        pdu = struct.pack(">BHH", WRITE_SINGLE_COIL, address, 0xFF00 if value else 0x0000)
        await self._request(pdu)

    async def write_register(self, address: int, value: int) -> None:
        pdu = struct.pack(">BHH", WRITE_SINGLE_REGISTER, address, int(value) & 0xFFFF)
        await self._request(pdu)

    # =========================================================================
    # Framing
    # =========================================================================

    async def _read(self, function_code: int, address: int, count: int) -> bytes:
        # PDU: Function Code (1) | Start Address (2) | Quantity (2)
        pdu = struct.pack(">BHH", function_code, address, count)
        response = await self._request(pdu)

        byte_count = response[1]
        data = response[2:2 + byte_count]
        if len(data) < byte_count:
            raise ValueError(f"Response data too short: expected {byte_count}, got {len(data)}")
        return data

    async def _request(self, pdu: bytes) -> bytes:
        """Send a PDU and return the response PDU."""
        if not self.is_connected:
            raise ConnectionError(f"Modbus device {self.config.name} is not connected")

        async with self._lock:
            if self.config.transport == Transport.TCP:
                exchange = self._exchange_tcp(pdu)
            else:
                exchange = self._exchange_rtu(pdu)
            response = await asyncio.wait_for(exchange, timeout=self.config.timeout_seconds)

        function_code = response[0]
        if function_code & 0x80:
            raise ModbusExceptionResponse(function_code & 0x7F, response[1] if len(response) > 1 else 0)
        if function_code != pdu[0]:
            raise ValueError(f"Unexpected function code 0x{function_code:02X} in response")
        return response

    def _next_transaction_id(self) -> int:
        self._transaction_id = (self._transaction_id + 1) & 0xFFFF
        return self._transaction_id

    async def _write_frame(self, frame: bytes) -> None:
        self._writer.write(frame)
        await self._writer.drain()

    async def _read_exactly(self, num_bytes: int) -> bytes:
        try:
            return await self._reader.readexactly(num_bytes)
        except asyncio.IncompleteReadError as e:
            raise ConnectionError(
                f"Connection closed while reading: got {len(e.partial)} of {num_bytes} bytes"
            ) from e

    async def _exchange_tcp(self, pdu: bytes) -> bytes:
        transaction_id = self._next_transaction_id()
        # MBAP Header: Transaction ID (2) | Protocol ID (2) | Length (2) | Unit ID (1)
        header = struct.pack(">HHHB", transaction_id, 0, len(pdu) + 1, self.config.slave_id)
        await self._write_frame(header + pdu)

        while True:
            rx_transaction, protocol_id, length, _unit = struct.unpack(">HHHB", await self._read_exactly(7))
            body = await self._read_exactly(length - 1)
            if protocol_id != 0:
                raise ValueError(f"Invalid protocol ID: {protocol_id}")
            if rx_transaction == transaction_id:
                return body
            # Late answer to a request that already timed out
            logger.debug(f"Discarding response for transaction {rx_transaction} (expected {transaction_id})")

    async def _exchange_rtu(self, pdu: bytes) -> bytes:
        frame = bytes([self.config.slave_id]) + pdu
        await self._write_frame(frame + struct.pack("<H", crc16(frame)))

        head = await self._read_exactly(2)
        function_code = head[1]
        if function_code & 0x80:
            rest = await self._read_exactly(1)
        elif function_code in (READ_COILS, READ_DISCRETE_INPUTS, READ_HOLDING_REGISTERS, READ_INPUT_REGISTERS):
            byte_count = await self._read_exactly(1)
            rest = byte_count + await self._read_exactly(byte_count[0])
        else:
            rest = await self._read_exactly(4)

        body = head + rest
        received_crc = struct.unpack("<H", await self._read_exactly(2))[0]
        if crc16(body) != received_crc:
            raise ValueError(f"CRC mismatch in response from {self.config.name}")
        if body[0] != self.config.slave_id:
            raise ValueError(f"Response from unexpected slave {body[0]}")
        return body[1:]

