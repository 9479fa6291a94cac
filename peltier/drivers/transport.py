"""
Modbus/TCP Transport
=====================
Raw-socket client that multiplexes concurrent requests over one
TCP connection to the PLC.

Each request gets a 16-bit transaction id and a PendingRequest
whose future is completed by the reader thread when the matching
response frame arrives. Requests block at most their timeout;
responses that arrive after a request was abandoned are logged
and discarded.

    caller ──submit()──► pending map ◄──dispatch── reader thread
       │                     ▲                         ▲
       └─────sendall()───────┼──────── socket ─────────┘
                             └── disconnect / link lost fails all
"""

import logging
import socket
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Optional

from peltier.core.errors import (
    ConnectionClosed,
    ConnectRefused,
    ProtocolError,
    RequestTimeout,
    TransportError,
)
from peltier.core.state_machine import ConnectionState, ConnectionStateMachine
from peltier.drivers.frame_codec import Frame, FrameBuffer, encode_frame

logger = logging.getLogger(__name__)

RECV_SIZE = 4096


@dataclass
class PendingRequest:
    """One in-flight request awaiting its response."""
    transaction_id: int
    unit_id: int
    issued_at: float = field(default_factory=time.monotonic)
    future: Future = field(default_factory=Future)

    @property
    def age(self) -> float:
        return time.monotonic() - self.issued_at


class TcpTransport:
    """
    Modbus/TCP client transport.

    Thread-safe: any number of threads may call `request()` while
    the reader thread completes responses. The pending map and the
    transaction counter are guarded by one lock; socket writes by
    another so frames are never interleaved.
    """

    def __init__(self, timeout: float = 3.0, connect_timeout: float = 5.0):
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.host: Optional[str] = None
        self.port: Optional[int] = None

        self.link = ConnectionStateMachine()
        self._sock: Optional[socket.socket] = None
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._pending = {}
        self._next_tid = 1

    @property
    def state(self) -> ConnectionState:
        return self.link.state

    @property
    def is_connected(self) -> bool:
        return self.link.is_connected

    @property
    def next_transaction_id(self) -> int:
        return self._next_tid

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ── Lifecycle ────────────────────────────────────────────

    def connect(self, host: str, port: int, timeout: Optional[float] = None):
        """
        Open the TCP connection and start the reader thread.

        Raises ConnectionStateError if another connect is running and
        ConnectRefused if the handshake fails or times out.
        """
        if self.link.state is ConnectionState.CONNECTED:
            self.disconnect()
        self.link.begin_connect()

        handshake = timeout if timeout is not None else self.connect_timeout
        try:
            sock = socket.create_connection((host, port), timeout=handshake)
        except OSError as exc:
            self.link.transition(ConnectionState.DISCONNECTED)
            raise ConnectRefused(f"Connect to {host}:{port} failed: {exc}") from exc

        sock.settimeout(None)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        with self._lock:
            self._sock = sock
            self.host, self.port = host, port

        # CONNECTED before the reader runs, so a peer close can only
        # ever move a connected link to DISCONNECTED
        if not self.link.transition(ConnectionState.CONNECTED):
            with self._lock:
                if self._sock is sock:
                    self._sock = None
            self._close_socket(sock)
            self.link.transition(ConnectionState.DISCONNECTED)
            raise ConnectRefused(
                f"Connect to {host}:{port} abandoned in state {self.state.value}"
            )

        self._reader = threading.Thread(
            target=self._reader_loop, args=(sock,),
            name="modbus-reader", daemon=True,
        )
        self._reader.start()
        logger.info("Connected to PLC at %s:%d", host, port)

    def disconnect(self):
        """Close the link, failing every pending request."""
        with self._lock:
            sock, self._sock = self._sock, None
        if sock is not None:
            self._close_socket(sock)
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2.0)
        self._reader = None
        failed = self._fail_all("disconnected")
        if self.link.transition(ConnectionState.DISCONNECTED):
            logger.info("Disconnected from PLC (%d pending failed)", failed)

    @staticmethod
    def _close_socket(sock: socket.socket):
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()

    def _fail_all(self, reason: str) -> int:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for req in pending:
            if not req.future.done():
                req.future.set_exception(ConnectionClosed(reason))
        return len(pending)

    # ── Requests ─────────────────────────────────────────────

    def _allocate_tid(self) -> int:
        """Next transaction id not currently pending (caller holds the lock)."""
        for _ in range(0x10000):
            tid = self._next_tid
            self._next_tid = (tid + 1) & 0xFFFF
            if tid not in self._pending:
                return tid
        raise TransportError("No free transaction ids")

    def submit(self, pdu: bytes, unit_id: int) -> PendingRequest:
        """Send a request without waiting; returns its PendingRequest."""
        with self._lock:
            sock = self._sock
            if sock is None or not self.is_connected:
                raise ConnectionClosed("not connected")
            tid = self._allocate_tid()
            pending = PendingRequest(transaction_id=tid, unit_id=unit_id)
            self._pending[tid] = pending

        data = encode_frame(Frame(transaction_id=tid, unit_id=unit_id, pdu=pdu))
        try:
            with self._send_lock:
                sock.sendall(data)
        except OSError as exc:
            with self._lock:
                self._pending.pop(tid, None)
            self._link_lost(sock, f"send failed: {exc}")
            raise ConnectionClosed(f"Send failed: {exc}") from exc
        return pending

    def wait(self, pending: PendingRequest, timeout: Optional[float] = None) -> bytes:
        """Block until the response PDU for `pending` arrives."""
        limit = self.timeout if timeout is None else timeout
        try:
            return pending.future.result(timeout=limit)
        except FutureTimeout:
            pass

        with self._lock:
            if self._pending.get(pending.transaction_id) is pending:
                del self._pending[pending.transaction_id]
        # Response may have landed between the timeout and the removal
        if pending.future.done():
            return pending.future.result()
        raise RequestTimeout(
            f"No response to transaction {pending.transaction_id} "
            f"within {limit:.1f} s"
        )

    def request(self, pdu: bytes, unit_id: int, timeout: Optional[float] = None) -> bytes:
        """Send a request PDU and return the response PDU."""
        return self.wait(self.submit(pdu, unit_id), timeout)

    # ── Reader Thread ────────────────────────────────────────

    def _reader_loop(self, sock: socket.socket):
        buffer = FrameBuffer()
        reason = "connection closed by peer"
        while True:
            try:
                data = sock.recv(RECV_SIZE)
            except OSError as exc:
                reason = f"connection reset: {exc}"
                break
            if not data:
                break
            buffer.append(data)
            self._drain(buffer)
        self._link_lost(sock, reason)

    def _drain(self, buffer: FrameBuffer):
        while True:
            try:
                frame = buffer.pop_frame()
            except ProtocolError as exc:
                self._fail_one(exc)
                return
            if frame is None:
                return
            self._dispatch(frame)

    def _dispatch(self, frame: Frame):
        with self._lock:
            pending = self._pending.pop(frame.transaction_id, None)
        if pending is None:
            logger.warning(
                "Discarding response for unknown or abandoned transaction %d",
                frame.transaction_id,
            )
            return
        if pending.future.done():
            return
        if frame.unit_id != pending.unit_id:
            pending.future.set_exception(ProtocolError(
                f"Unit id {frame.unit_id} does not match request unit "
                f"{pending.unit_id}",
                transaction_id=frame.transaction_id,
            ))
            return
        pending.future.set_result(frame.pdu)

    def _fail_one(self, exc: ProtocolError):
        """Fail the request named by a malformed frame's header."""
        logger.warning("Malformed frame from PLC: %s", exc)
        if exc.transaction_id is None:
            return
        with self._lock:
            pending = self._pending.pop(exc.transaction_id, None)
        if pending is not None and not pending.future.done():
            pending.future.set_exception(exc)

    def _link_lost(self, sock: socket.socket, reason: str):
        with self._lock:
            if self._sock is not sock:
                return  # Deliberate disconnect already tore this link down
            self._sock = None
        logger.warning("PLC link lost: %s", reason)
        self._close_socket(sock)
        self._fail_all(reason)
        self.link.transition(ConnectionState.DISCONNECTED)
