"""
Tests for the Modbus/TCP transport against a threaded fake PLC.
"""

import threading
import time

import pytest

from peltier.core.errors import (
    ConnectionClosed,
    ConnectionStateError,
    ConnectRefused,
    ProtocolError,
    RequestTimeout,
)
from peltier.core.state_machine import ConnectionState
from peltier.drivers.frame_codec import (
    Frame,
    FunctionCode,
    ReadRegistersResponse,
    ReadRequest,
    decode_response,
    encode_frame,
)
from peltier.drivers.transport import TcpTransport


def _read_pdu(address=2026, count=10):
    return ReadRequest(FunctionCode.READ_HOLDING_REGISTERS, address, count).encode()


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


class TestConnectionLifecycle:

    def test_connect_and_disconnect(self, modbus_server):
        transport = TcpTransport(timeout=1.0)
        host, port = modbus_server.address
        states = []
        transport.link.add_listener(lambda prev, new: states.append(new))

        transport.connect(host, port)
        assert transport.is_connected
        transport.disconnect()

        assert transport.state == ConnectionState.DISCONNECTED
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    def test_refused_connect(self, modbus_server):
        host, port = modbus_server.address
        modbus_server.stop()
        transport = TcpTransport(connect_timeout=0.5)
        with pytest.raises(ConnectRefused):
            transport.connect(host, port)
        assert transport.state == ConnectionState.DISCONNECTED

    def test_connect_while_connecting_rejected(self):
        transport = TcpTransport()
        transport.link.begin_connect()
        with pytest.raises(ConnectionStateError):
            transport.connect("127.0.0.1", 1)

    def test_request_when_disconnected(self):
        transport = TcpTransport()
        with pytest.raises(ConnectionClosed):
            transport.request(_read_pdu(), unit_id=1)

    def test_peer_close_fails_pending(self, tcp_transport, modbus_server):
        modbus_server.drop = True
        pending = tcp_transport.submit(_read_pdu(), unit_id=1)
        assert _wait_for(lambda: modbus_server.frames)
        modbus_server.close_clients()

        with pytest.raises(ConnectionClosed):
            tcp_transport.wait(pending, timeout=2.0)
        assert _wait_for(lambda: not tcp_transport.is_connected)
        assert tcp_transport.pending_count == 0

    def test_peer_hangs_up_on_accept(self, modbus_server):
        modbus_server.close_on_accept = True
        transport = TcpTransport(timeout=0.5)
        host, port = modbus_server.address
        states = []
        transport.link.add_listener(lambda prev, new: states.append(new))

        transport.connect(host, port)
        assert _wait_for(lambda: transport.state == ConnectionState.DISCONNECTED)
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]
        with pytest.raises(ConnectionClosed):
            transport.request(_read_pdu(), unit_id=1)

    def test_refused_connected_transition_raises(self, modbus_server, monkeypatch):
        transport = TcpTransport(timeout=0.5)
        host, port = modbus_server.address
        real_transition = transport.link.transition

        def refuse_connected(target):
            if target is ConnectionState.CONNECTED:
                return False
            return real_transition(target)

        monkeypatch.setattr(transport.link, "transition", refuse_connected)
        with pytest.raises(ConnectRefused):
            transport.connect(host, port)
        assert transport.state == ConnectionState.DISCONNECTED
        with pytest.raises(ConnectionClosed):
            transport.request(_read_pdu(), unit_id=1)

    def test_disconnect_fails_pending(self, tcp_transport, modbus_server):
        modbus_server.drop = True
        pending = tcp_transport.submit(_read_pdu(), unit_id=1)
        tcp_transport.disconnect()
        with pytest.raises(ConnectionClosed):
            pending.future.result(timeout=0)
        assert tcp_transport.pending_count == 0


class TestRequests:

    def test_read_temperature_block(self, tcp_transport):
        pdu = tcp_transport.request(_read_pdu(), unit_id=1)
        response = decode_response(pdu, count=10)
        assert response.registers[0] == 224

    def test_fragmented_response(self, tcp_transport, modbus_server):
        modbus_server.fragment = True
        response = decode_response(tcp_transport.request(_read_pdu(), unit_id=1), count=10)
        assert response.values(signed=True)[0] == 224

    def test_coalesced_out_of_order_responses(self, tcp_transport, modbus_server):
        modbus_server.hold = 2
        first = tcp_transport.submit(_read_pdu(2026, 10), unit_id=1)
        second = tcp_transport.submit(_read_pdu(2020, 10), unit_id=1)

        r1 = decode_response(tcp_transport.wait(first), count=10)
        r2 = decode_response(tcp_transport.wait(second), count=10)
        assert r1.registers[0] == 224
        assert r2.registers[6] == 224

    def test_concurrent_requests_get_their_own_responses(self, tcp_transport, modbus_server):
        for address in range(100, 110):
            modbus_server.device.registers[address] = address
        results = {}

        def worker(address):
            pdu = tcp_transport.request(_read_pdu(address, 1), unit_id=1)
            results[address] = decode_response(pdu, count=1).registers[0]

        threads = [threading.Thread(target=worker, args=(a,)) for a in range(100, 110)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5.0)
        assert results == {a: a for a in range(100, 110)}

    def test_timeout_then_late_response_discarded(self, tcp_transport, modbus_server):
        modbus_server.delay = 0.3
        with pytest.raises(RequestTimeout):
            tcp_transport.request(_read_pdu(), unit_id=1, timeout=0.05)
        assert tcp_transport.pending_count == 0

        modbus_server.delay = 0.0
        time.sleep(0.4)
        response = decode_response(tcp_transport.request(_read_pdu(), unit_id=1), count=10)
        assert response.registers[0] == 224
        assert tcp_transport.is_connected

    def test_silent_device_times_out(self, tcp_transport, modbus_server):
        modbus_server.drop = True
        start = time.monotonic()
        with pytest.raises(RequestTimeout):
            tcp_transport.request(_read_pdu(), unit_id=1, timeout=0.2)
        assert time.monotonic() - start < 1.0

    def test_unit_id_mismatch(self, tcp_transport, modbus_server):
        modbus_server.unit_override = 9
        with pytest.raises(ProtocolError):
            tcp_transport.request(_read_pdu(), unit_id=1)
        assert tcp_transport.is_connected

    def test_bad_protocol_id_fails_only_that_request(self, tcp_transport, modbus_server):
        def bad_header(frame):
            pdu = ReadRegistersResponse(3, (0,) * 10).encode()
            data = bytearray(encode_frame(Frame(frame.transaction_id, frame.unit_id, pdu)))
            data[3] = 7
            return bytes(data)

        modbus_server.raw_reply = bad_header
        with pytest.raises(ProtocolError):
            tcp_transport.request(_read_pdu(), unit_id=1)
        assert tcp_transport.is_connected

        modbus_server.raw_reply = None
        response = decode_response(tcp_transport.request(_read_pdu(), unit_id=1), count=10)
        assert response.registers[0] == 224


class TestTransactionIds:

    def test_ids_start_at_one_and_increment(self, tcp_transport, modbus_server):
        tcp_transport.request(_read_pdu(), unit_id=1)
        tcp_transport.request(_read_pdu(), unit_id=1)
        assert [f.transaction_id for f in modbus_server.frames] == [1, 2]

    def test_id_wraps_at_16_bits(self, tcp_transport, modbus_server):
        tcp_transport._next_tid = 0xFFFF
        tcp_transport.request(_read_pdu(), unit_id=1)
        tcp_transport.request(_read_pdu(), unit_id=1)
        assert [f.transaction_id for f in modbus_server.frames] == [0xFFFF, 0]
        assert tcp_transport.next_transaction_id == 1

    def test_pending_ids_distinct_across_wrap(self, tcp_transport, modbus_server):
        modbus_server.drop = True
        tcp_transport._next_tid = 0xFFFE
        pending = [tcp_transport.submit(_read_pdu(), unit_id=1) for _ in range(4)]
        ids = [p.transaction_id for p in pending]
        assert ids == [0xFFFE, 0xFFFF, 0, 1]
        assert len(set(ids)) == len(ids)

    def test_allocation_skips_pending_id(self, tcp_transport, modbus_server):
        modbus_server.drop = True
        stuck = tcp_transport.submit(_read_pdu(), unit_id=1)
        tcp_transport._next_tid = stuck.transaction_id
        nxt = tcp_transport.submit(_read_pdu(), unit_id=1)
        assert nxt.transaction_id != stuck.transaction_id
