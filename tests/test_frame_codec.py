"""
Tests for the Modbus/TCP frame codec.
"""

import pytest

from peltier.core.errors import ProtocolError
from peltier.drivers.frame_codec import (
    COIL_ON,
    ExceptionCode,
    ExceptionResponse,
    Frame,
    FrameBuffer,
    FunctionCode,
    ReadBitsResponse,
    ReadRegistersResponse,
    ReadRequest,
    WriteCoilRequest,
    WriteCoilResponse,
    WriteRegisterRequest,
    WriteRegisterResponse,
    decode_frame,
    decode_request,
    decode_response,
    encode_frame,
    is_exception,
    to_signed16,
)


class TestFrameEnvelope:
    """MBAP header encoding and stream reassembly."""

    def test_encode_header_layout(self):
        pdu = ReadRequest(FunctionCode.READ_HOLDING_REGISTERS, 2026, 10).encode()
        data = encode_frame(Frame(transaction_id=0x1234, unit_id=1, pdu=pdu))
        assert data == bytes([
            0x12, 0x34,       # transaction id
            0x00, 0x00,       # protocol id
            0x00, 0x06,       # length: unit id + 5 byte PDU
            0x01,             # unit id
            0x03, 0x07, 0xEA, 0x00, 0x0A,
        ])

    def test_decode_returns_frame_and_consumed(self):
        frame = Frame(transaction_id=7, unit_id=3, pdu=b"\x01\x00\x02\x00\x01")
        data = encode_frame(frame) + b"\xAA"
        decoded, consumed = decode_frame(data)
        assert decoded == frame
        assert consumed == len(data) - 1

    def test_incomplete_frame_returns_none(self):
        data = encode_frame(Frame(1, 1, b"\x03\x00\x00\x00\x01"))
        assert decode_frame(data[:5]) is None
        assert decode_frame(data[:-1]) is None

    def test_nonzero_protocol_id_rejected(self):
        data = bytearray(encode_frame(Frame(9, 1, b"\x03\x00\x00\x00\x01")))
        data[3] = 1
        with pytest.raises(ProtocolError) as exc_info:
            decode_frame(bytes(data))
        assert exc_info.value.transaction_id == 9

    @pytest.mark.parametrize("length", [0, 1, 255, 0xFFFF])
    def test_impossible_length_rejected(self, length):
        data = bytes([0, 5, 0, 0, length >> 8, length & 0xFF, 1, 3])
        with pytest.raises(ProtocolError):
            decode_frame(data)

    def test_encode_validates_fields(self):
        with pytest.raises(ValueError):
            encode_frame(Frame(0x10000, 1, b"\x03"))
        with pytest.raises(ValueError):
            encode_frame(Frame(1, 256, b"\x03"))
        with pytest.raises(ValueError):
            encode_frame(Frame(1, 1, b""))
        with pytest.raises(ValueError):
            encode_frame(Frame(1, 1, bytes(254)))

    def test_buffer_reassembles_fragments(self):
        data = encode_frame(Frame(42, 1, b"\x05\x00\x02\xFF\x00"))
        buffer = FrameBuffer()
        frames = []
        for i in range(len(data)):
            frames.extend(buffer.feed(data[i:i + 1]))
        assert len(frames) == 1
        assert frames[0].transaction_id == 42
        assert len(buffer) == 0

    def test_buffer_splits_coalesced_frames(self):
        first = encode_frame(Frame(1, 1, b"\x03\x02\x00\xE0"))
        second = encode_frame(Frame(2, 1, b"\x83\x02"))
        buffer = FrameBuffer()
        frames = buffer.feed(first + second[:4])
        assert [f.transaction_id for f in frames] == [1]
        frames = buffer.feed(second[4:])
        assert [f.transaction_id for f in frames] == [2]

    def test_buffer_cleared_after_bad_header(self):
        buffer = FrameBuffer()
        buffer.append(bytes([0, 3, 0, 9, 0, 6, 1, 3, 0, 0, 0, 1]))
        with pytest.raises(ProtocolError):
            buffer.pop_frame()
        assert len(buffer) == 0


class TestPDUs:
    """Round trips for every supported function code."""

    @pytest.mark.parametrize("request_pdu", [
        ReadRequest(FunctionCode.READ_COILS, 2, 4),
        ReadRequest(FunctionCode.READ_HOLDING_REGISTERS, 2020, 10),
        ReadRequest(FunctionCode.READ_INPUT_REGISTERS, 0, 125),
        WriteCoilRequest(4, True),
        WriteCoilRequest(4, False),
        WriteRegisterRequest(2, 1),
    ])
    def test_request_round_trip(self, request_pdu):
        assert decode_request(request_pdu.encode()) == request_pdu

    def test_coil_on_wire_value(self):
        assert WriteCoilRequest(2, True).encode()[3:] == COIL_ON.to_bytes(2, "big")
        assert WriteCoilRequest(2, False).encode()[3:] == b"\x00\x00"

    def test_illegal_coil_value_rejected(self):
        with pytest.raises(ProtocolError):
            decode_request(b"\x05\x00\x02\x12\x34")

    @pytest.mark.parametrize("fc,count", [
        (FunctionCode.READ_HOLDING_REGISTERS, 0),
        (FunctionCode.READ_HOLDING_REGISTERS, 126),
        (FunctionCode.READ_COILS, 2001),
    ])
    def test_read_count_limits(self, fc, count):
        with pytest.raises(ValueError):
            ReadRequest(fc, 0, count)

    def test_read_overrun_rejected(self):
        with pytest.raises(ValueError):
            ReadRequest(FunctionCode.READ_HOLDING_REGISTERS, 0xFFFF, 2)

    def test_register_response_round_trip(self):
        response = ReadRegistersResponse(3, (224, 65506, 0))
        decoded = decode_response(response.encode(), count=3)
        assert decoded == response
        assert decoded.values(signed=True) == [224, -30, 0]

    def test_coil_response_trimmed_to_count(self):
        response = ReadBitsResponse(1, (True, False, True))
        decoded = decode_response(response.encode(), count=3)
        assert decoded.bits == (True, False, True)

    def test_write_echo_round_trip(self):
        assert decode_response(WriteCoilResponse(4, True).encode()) == WriteCoilResponse(4, True)
        assert decode_response(WriteRegisterResponse(2, 1).encode()) == WriteRegisterResponse(2, 1)

    def test_exception_response(self):
        pdu = ExceptionResponse(3, ExceptionCode.ILLEGAL_DATA_ADDRESS).encode()
        assert pdu == b"\x83\x02"
        assert is_exception(pdu)
        decoded = decode_response(pdu)
        assert decoded.function_code == 3
        assert decoded.exception_code == ExceptionCode.ILLEGAL_DATA_ADDRESS

    def test_byte_count_mismatch(self):
        with pytest.raises(ProtocolError):
            decode_response(b"\x03\x04\x00\x01")

    def test_register_count_mismatch(self):
        with pytest.raises(ProtocolError):
            decode_response(ReadRegistersResponse(3, (1, 2)).encode(), count=10)

    def test_unsupported_function(self):
        with pytest.raises(ProtocolError):
            decode_response(b"\x10\x00\x01\x00\x01")


class TestSignedConversion:

    @pytest.mark.parametrize("raw,expected", [
        (224, 224),
        (65506, -30),
        (0x7FFF, 32767),
        (0x8000, -32768),
        (0xFFFF, -1),
    ])
    def test_to_signed16(self, raw, expected):
        assert to_signed16(raw) == expected

    def test_tenths_of_degree(self):
        assert to_signed16(224) / 10.0 == pytest.approx(22.4)
        assert to_signed16(65506) / 10.0 == pytest.approx(-3.0)
