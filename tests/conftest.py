"""
Shared test fixtures for the Peltier cooler test suite.

Two fake PLCs are provided, both backed by the same register image:

  - fake_transport: in-process, `request(pdu, unit_id)` answers
    directly (driver and controller tests)
  - modbus_server: threaded Modbus/TCP server on an ephemeral port
    (transport tests: fragmentation, coalescing, silence, late replies)
"""

import socket
import socketserver
import threading
import time

import pytest

from peltier.config.io_map import IOMap
from peltier.config.setpoints import Setpoints
from peltier.core.controller import ThermalController
from peltier.core.errors import ConnectionClosed, ConnectRefused, ProtocolError, RequestTimeout
from peltier.drivers.frame_codec import (
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
    WriteRegisterResponse,
    decode_request,
    encode_frame,
)
from peltier.drivers.simulator import ContainerThermalModel, SyntheticTemperatureFeed
from peltier.drivers.transport import TcpTransport


class FakePLCDevice:
    """Register image of the GMT PLC, including the register 2026 quirk."""

    def __init__(self, io_map: IOMap):
        self.io_map = io_map
        self.registers = {}
        self.coils = {}
        self.batch_quirk = True
        self.refused_blocks = set()     # Block starts answered with ILLEGAL_DATA_ADDRESS
        self.failing = {}               # Function code -> exception code
        self.bad_coil_echo = False
        self.requests = []

    def set_temperature(self, celsius: float):
        tc = self.io_map.thermocouple
        self.registers[tc.address] = int(round(celsius * tc.scale)) & 0xFFFF

    def coil(self, actuator_id: int) -> bool:
        return self.coils.get(self.io_map.actuator(actuator_id).coil_address, False)

    def handle(self, pdu: bytes) -> bytes:
        try:
            request = decode_request(pdu)
        except ProtocolError:
            return ExceptionResponse(pdu[0], ExceptionCode.ILLEGAL_FUNCTION).encode()
        self.requests.append(request)

        fc = request.function_code
        if fc in self.failing:
            return ExceptionResponse(fc, self.failing[fc]).encode()

        if isinstance(request, ReadRequest):
            start, count = request.address, request.count
            if fc == FunctionCode.READ_COILS:
                bits = tuple(self.coils.get(a, False) for a in range(start, start + count))
                return ReadBitsResponse(fc, bits).encode()
            tc = self.io_map.thermocouple
            covers = start <= tc.address < start + count
            if start in self.refused_blocks or (
                    self.batch_quirk and covers and count < tc.block_size):
                return ExceptionResponse(fc, ExceptionCode.ILLEGAL_DATA_ADDRESS).encode()
            regs = tuple(self.registers.get(a, 0) for a in range(start, start + count))
            return ReadRegistersResponse(fc, regs).encode()

        if isinstance(request, WriteCoilRequest):
            self.coils[request.address] = request.value
            echo = not request.value if self.bad_coil_echo else request.value
            return WriteCoilResponse(request.address, echo).encode()

        self.registers[request.address] = request.value
        return WriteRegisterResponse(request.address, request.value).encode()


class FakeTransport:
    """In-process stand-in for TcpTransport."""

    def __init__(self, device: FakePLCDevice):
        self.device = device
        self.timeout = 3.0
        self.connected = False
        self.refuse = False
        self.silent = False
        self.connects = 0
        self.connect_timeout = None
        self.timeouts = 0

    @property
    def is_connected(self) -> bool:
        return self.connected

    def connect(self, host, port, timeout=None):
        self.connects += 1
        self.connect_timeout = timeout
        if self.refuse:
            raise ConnectRefused(f"Connect to {host}:{port} failed: refused")
        self.connected = True

    def disconnect(self):
        self.connected = False

    def request(self, pdu, unit_id, timeout=None):
        if not self.connected:
            raise ConnectionClosed("not connected")
        if self.silent:
            self.timeouts += 1
            raise RequestTimeout("No response")
        return self.device.handle(pdu)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class _ModbusHandler(socketserver.BaseRequestHandler):

    def handle(self):
        plc = self.server.plc
        plc.clients.append(self.request)
        if plc.close_on_accept:
            self.request.shutdown(socket.SHUT_RDWR)
            return
        buffer = FrameBuffer()
        held = []
        while True:
            try:
                data = self.request.recv(4096)
            except OSError:
                return
            if not data:
                return
            for frame in buffer.feed(data):
                plc.frames.append(frame)
                reply = plc.reply_for(frame)
                if reply is None:
                    continue
                if plc.hold:
                    held.append(reply)
                    if len(held) >= plc.hold:
                        self.request.sendall(b"".join(reversed(held)))
                        held.clear()
                    continue
                if plc.delay:
                    time.sleep(plc.delay)
                if plc.fragment:
                    for i in range(len(reply)):
                        self.request.sendall(reply[i:i + 1])
                        time.sleep(0.002)
                else:
                    self.request.sendall(reply)


class FakeModbusServer:
    """
    Threaded Modbus/TCP server around a FakePLCDevice.

    Knobs: `drop` (never answer), `delay` (seconds before answering),
    `fragment` (one byte per send), `hold` (collect N replies and send
    them reversed in one write), `unit_override`, `raw_reply`
    (callable(frame) -> bytes replacing the normal reply),
    `close_on_accept` (hang up as soon as a client connects).
    """

    def __init__(self, device: FakePLCDevice):
        self.device = device
        self.drop = False
        self.delay = 0.0
        self.fragment = False
        self.hold = 0
        self.unit_override = None
        self.raw_reply = None
        self.close_on_accept = False
        self.frames = []
        self.clients = []
        self._server = socketserver.ThreadingTCPServer(("127.0.0.1", 0), _ModbusHandler)
        self._server.daemon_threads = True
        self._server.plc = self
        self._thread = None

    @property
    def address(self) -> tuple:
        return self._server.server_address

    def reply_for(self, frame: Frame):
        if self.drop:
            return None
        if self.raw_reply is not None:
            return self.raw_reply(frame)
        pdu = self.device.handle(frame.pdu)
        unit_id = frame.unit_id if self.unit_override is None else self.unit_override
        return encode_frame(Frame(frame.transaction_id, unit_id, pdu))

    def close_clients(self):
        for sock in self.clients:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    def start(self):
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

    def stop(self):
        self._server.shutdown()
        self._server.server_close()
        self.close_clients()


@pytest.fixture
def setpoints():
    return Setpoints()


@pytest.fixture
def io_map():
    return IOMap()


@pytest.fixture
def fake_device(io_map):
    device = FakePLCDevice(io_map)
    device.set_temperature(22.4)
    return device


@pytest.fixture
def fake_transport(fake_device):
    transport = FakeTransport(fake_device)
    transport.connect("fake-plc", 502)
    return transport


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def controller(setpoints, io_map, fake_transport, clock):
    """Controller wired to the in-process fake PLC (not started)."""
    feed = SyntheticTemperatureFeed(
        ContainerThermalModel(noise_c=0.0, ambient_temp=setpoints.ambient_temp_c)
    )
    ctrl = ThermalController(
        setpoints=setpoints, io_map=io_map, transport=fake_transport,
        synthetic_feed=feed, clock=clock,
    )
    ctrl.connect("fake-plc", 502)
    return ctrl


@pytest.fixture
def modbus_server(io_map):
    device = FakePLCDevice(io_map)
    device.set_temperature(22.4)
    server = FakeModbusServer(device)
    server.start()
    yield server
    server.stop()


@pytest.fixture
def tcp_transport(modbus_server):
    transport = TcpTransport(timeout=2.0, connect_timeout=2.0)
    host, port = modbus_server.address
    transport.connect(host, port)
    yield transport
    transport.disconnect()
