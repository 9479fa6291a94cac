"""
Modbus/TCP Frame Codec
=======================
Pure encode/decode functions for the Modbus/TCP envelope and the
function-code payloads the controller uses.

Frame layout (all fields big-endian):

    0       2       4       6     7
    ┌───────┬───────┬───────┬─────┬──────────────┐
    │ TID   │ PID=0 │ LEN   │ UID │ PDU ...      │
    └───────┴───────┴───────┴─────┴──────────────┘
    LEN counts the unit id plus the PDU.

Supported function codes:
  01 Read Coils              05 Write Single Coil
  03 Read Holding Registers  06 Write Single Register
  04 Read Input Registers

An exception response is any PDU whose function byte has the high
bit set; the following byte is the exception code.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from peltier.core.errors import ProtocolError

HEADER_SIZE = 7          # TID + PID + LEN + UID
LENGTH_PREFIX_SIZE = 6   # Bytes needed to know how long the frame is
PROTOCOL_ID = 0
EXCEPTION_FLAG = 0x80
MAX_FRAME_LENGTH = 254   # UID + largest PDU (253 bytes)

COIL_ON = 0xFF00
COIL_OFF = 0x0000

MAX_READ_BITS = 2000
MAX_READ_REGISTERS = 125

_HEADER = struct.Struct(">HHHB")


class FunctionCode(IntEnum):
    READ_COILS = 0x01
    READ_HOLDING_REGISTERS = 0x03
    READ_INPUT_REGISTERS = 0x04
    WRITE_SINGLE_COIL = 0x05
    WRITE_SINGLE_REGISTER = 0x06


class ExceptionCode(IntEnum):
    ILLEGAL_FUNCTION = 0x01
    ILLEGAL_DATA_ADDRESS = 0x02
    ILLEGAL_DATA_VALUE = 0x03
    SERVER_DEVICE_FAILURE = 0x04


_READ_BITS = (FunctionCode.READ_COILS,)
_READ_REGISTERS = (
    FunctionCode.READ_HOLDING_REGISTERS,
    FunctionCode.READ_INPUT_REGISTERS,
)


def _check_u16(name: str, value: int):
    if not 0 <= value <= 0xFFFF:
        raise ValueError(f"{name} must be 0..65535, got {value}")


def to_signed16(raw: int) -> int:
    """Reinterpret an unsigned 16-bit register as two's-complement."""
    raw &= 0xFFFF
    return raw - 0x10000 if raw > 0x7FFF else raw


# ── Frame Envelope ───────────────────────────────────────────

@dataclass(frozen=True)
class Frame:
    """One Modbus/TCP application data unit."""
    transaction_id: int
    unit_id: int
    pdu: bytes
    protocol_id: int = PROTOCOL_ID

    @property
    def length(self) -> int:
        return 1 + len(self.pdu)

    @property
    def function_code(self) -> int:
        return self.pdu[0] if self.pdu else 0


def encode_frame(frame: Frame) -> bytes:
    """Serialize a frame to bytes."""
    _check_u16("transaction_id", frame.transaction_id)
    if not 0 <= frame.unit_id <= 0xFF:
        raise ValueError(f"unit_id must be 0..255, got {frame.unit_id}")
    if not frame.pdu:
        raise ValueError("PDU must not be empty")
    if frame.length > MAX_FRAME_LENGTH:
        raise ValueError(f"PDU too long: {len(frame.pdu)} bytes")
    header = _HEADER.pack(
        frame.transaction_id, frame.protocol_id, frame.length, frame.unit_id
    )
    return header + bytes(frame.pdu)


def decode_frame(buffer: bytes) -> Optional[tuple]:
    """
    Decode one frame from the front of `buffer`.

    Returns (frame, bytes_consumed), or None when the buffer does not
    yet hold a complete frame. Raises ProtocolError for a non-zero
    protocol id or an impossible length field.
    """
    if len(buffer) < LENGTH_PREFIX_SIZE:
        return None

    tid, pid, length = struct.unpack_from(">HHH", buffer, 0)
    if pid != PROTOCOL_ID:
        raise ProtocolError(f"Bad protocol id {pid}", transaction_id=tid)
    if length < 2 or length > MAX_FRAME_LENGTH:
        raise ProtocolError(f"Bad length field {length}", transaction_id=tid)

    total = LENGTH_PREFIX_SIZE + length
    if len(buffer) < total:
        return None

    unit_id = buffer[LENGTH_PREFIX_SIZE]
    pdu = bytes(buffer[HEADER_SIZE:total])
    return Frame(transaction_id=tid, unit_id=unit_id, pdu=pdu, protocol_id=pid), total


class FrameBuffer:
    """
    Reassembles frames from a TCP byte stream.

    TCP may split one frame across several reads or coalesce several
    frames into one; bytes are held until the length prefix and then
    the declared length are available.
    """

    def __init__(self):
        self._buffer = bytearray()

    def __len__(self) -> int:
        return len(self._buffer)

    def append(self, data: bytes):
        self._buffer.extend(data)

    def pop_frame(self) -> Optional[Frame]:
        """
        Remove and return the next complete frame, or None.

        A ProtocolError clears the buffer: once a header is bad the
        stream is out of sync and nothing after it can be trusted.
        """
        try:
            result = decode_frame(self._buffer)
        except ProtocolError:
            self._buffer.clear()
            raise
        if result is None:
            return None
        frame, consumed = result
        del self._buffer[:consumed]
        return frame

    def feed(self, data: bytes) -> list:
        """Append received bytes and return every complete frame."""
        self.append(data)
        frames = []
        frame = self.pop_frame()
        while frame is not None:
            frames.append(frame)
            frame = self.pop_frame()
        return frames

    def clear(self):
        self._buffer.clear()


# ── Request PDUs ─────────────────────────────────────────────

@dataclass(frozen=True)
class ReadRequest:
    """Read coils (01) or holding/input registers (03/04)."""
    function_code: int
    address: int
    count: int

    def __post_init__(self):
        _check_u16("address", self.address)
        if self.function_code in _READ_BITS:
            limit = MAX_READ_BITS
        elif self.function_code in _READ_REGISTERS:
            limit = MAX_READ_REGISTERS
        else:
            raise ValueError(f"Not a read function: {self.function_code}")
        if not 1 <= self.count <= limit:
            raise ValueError(f"Count must be 1..{limit}, got {self.count}")
        if self.address + self.count - 1 > 0xFFFF:
            raise ValueError("Read overruns the address space")

    def encode(self) -> bytes:
        return struct.pack(">BHH", self.function_code, self.address, self.count)


@dataclass(frozen=True)
class WriteCoilRequest:
    address: int
    value: bool
    function_code: int = FunctionCode.WRITE_SINGLE_COIL

    def __post_init__(self):
        _check_u16("address", self.address)

    def encode(self) -> bytes:
        return struct.pack(
            ">BHH", self.function_code, self.address,
            COIL_ON if self.value else COIL_OFF,
        )


@dataclass(frozen=True)
class WriteRegisterRequest:
    address: int
    value: int
    function_code: int = FunctionCode.WRITE_SINGLE_REGISTER

    def __post_init__(self):
        _check_u16("address", self.address)
        _check_u16("value", self.value)

    def encode(self) -> bytes:
        return struct.pack(">BHH", self.function_code, self.address, self.value)


def _decode_coil_value(raw: int) -> bool:
    if raw == COIL_ON:
        return True
    if raw == COIL_OFF:
        return False
    raise ProtocolError(f"Illegal coil value 0x{raw:04X}")


def decode_request(pdu: bytes):
    """Decode a request PDU (used by servers and tests)."""
    if len(pdu) != 5:
        raise ProtocolError(f"Request PDU must be 5 bytes, got {len(pdu)}")
    fc, address, value = struct.unpack(">BHH", pdu)
    if fc in _READ_BITS or fc in _READ_REGISTERS:
        try:
            return ReadRequest(fc, address, value)
        except ValueError as exc:
            raise ProtocolError(str(exc)) from exc
    if fc == FunctionCode.WRITE_SINGLE_COIL:
        return WriteCoilRequest(address, _decode_coil_value(value))
    if fc == FunctionCode.WRITE_SINGLE_REGISTER:
        return WriteRegisterRequest(address, value)
    raise ProtocolError(f"Unsupported function code 0x{fc:02X}")


# ── Response PDUs ────────────────────────────────────────────

@dataclass(frozen=True)
class ReadBitsResponse:
    function_code: int
    bits: tuple

    def encode(self) -> bytes:
        packed = bytearray((len(self.bits) + 7) // 8)
        for i, bit in enumerate(self.bits):
            if bit:
                packed[i // 8] |= 1 << (i % 8)
        return bytes([self.function_code, len(packed)]) + bytes(packed)


@dataclass(frozen=True)
class ReadRegistersResponse:
    function_code: int
    registers: tuple

    def encode(self) -> bytes:
        body = b"".join(struct.pack(">H", r & 0xFFFF) for r in self.registers)
        return bytes([self.function_code, len(body)]) + body

    def values(self, signed: bool = False) -> list:
        if signed:
            return [to_signed16(r) for r in self.registers]
        return list(self.registers)


@dataclass(frozen=True)
class WriteCoilResponse:
    address: int
    value: bool
    function_code: int = FunctionCode.WRITE_SINGLE_COIL

    def encode(self) -> bytes:
        return WriteCoilRequest(self.address, self.value).encode()


@dataclass(frozen=True)
class WriteRegisterResponse:
    address: int
    value: int
    function_code: int = FunctionCode.WRITE_SINGLE_REGISTER

    def encode(self) -> bytes:
        return WriteRegisterRequest(self.address, self.value).encode()


@dataclass(frozen=True)
class ExceptionResponse:
    function_code: int       # Original function code, without the flag
    exception_code: int

    def encode(self) -> bytes:
        return bytes([self.function_code | EXCEPTION_FLAG, self.exception_code])


def is_exception(pdu: bytes) -> bool:
    return bool(pdu) and bool(pdu[0] & EXCEPTION_FLAG)


def decode_response(pdu: bytes, count: Optional[int] = None):
    """
    Decode a response PDU.

    `count` trims coil responses to the number of coils requested
    (the wire format pads to whole bytes) and checks register counts.
    """
    if not pdu:
        raise ProtocolError("Empty response PDU")

    fc = pdu[0]
    if fc & EXCEPTION_FLAG:
        if len(pdu) != 2:
            raise ProtocolError(f"Exception PDU must be 2 bytes, got {len(pdu)}")
        return ExceptionResponse(fc & ~EXCEPTION_FLAG & 0xFF, pdu[1])

    if fc in _READ_BITS or fc in _READ_REGISTERS:
        if len(pdu) < 2:
            raise ProtocolError("Read response missing byte count")
        byte_count = pdu[1]
        data = pdu[2:]
        if len(data) != byte_count:
            raise ProtocolError(
                f"Byte count {byte_count} does not match payload {len(data)}"
            )
        if fc in _READ_BITS:
            bits = tuple(
                bool((data[i // 8] >> (i % 8)) & 1) for i in range(byte_count * 8)
            )
            if count is not None:
                if (count + 7) // 8 != byte_count:
                    raise ProtocolError(
                        f"Expected {(count + 7) // 8} coil bytes, got {byte_count}"
                    )
                bits = bits[:count]
            return ReadBitsResponse(fc, bits)

        if byte_count % 2:
            raise ProtocolError(f"Odd register byte count {byte_count}")
        registers = struct.unpack(f">{byte_count // 2}H", data)
        if count is not None and len(registers) != count:
            raise ProtocolError(
                f"Expected {count} registers, got {len(registers)}"
            )
        return ReadRegistersResponse(fc, tuple(registers))

    if fc in (FunctionCode.WRITE_SINGLE_COIL, FunctionCode.WRITE_SINGLE_REGISTER):
        if len(pdu) != 5:
            raise ProtocolError(f"Write echo must be 5 bytes, got {len(pdu)}")
        _, address, value = struct.unpack(">BHH", pdu)
        if fc == FunctionCode.WRITE_SINGLE_COIL:
            return WriteCoilResponse(address, _decode_coil_value(value))
        return WriteRegisterResponse(address, value)

    raise ProtocolError(f"Unsupported function code 0x{fc:02X}")
