"""
PLC Link State Machine
=======================
Governs the lifecycle of the Modbus/TCP connection to the PLC.

State Diagram:

    DISCONNECTED ──► CONNECTING ──► CONNECTED
         ▲               │              │
         │               └── (failure) ─┤
         └──────────────────────────────┘
                      disconnect / link lost

Only one lifecycle transition runs at a time; a connect requested
while another is in progress is refused.
"""

from enum import Enum
import threading
import time
import logging

from peltier.core.errors import ConnectionStateError

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


# Permitted transitions
_TRANSITIONS = {
    ConnectionState.DISCONNECTED: [ConnectionState.CONNECTING],
    ConnectionState.CONNECTING:   [ConnectionState.CONNECTED,
                                   ConnectionState.DISCONNECTED],
    ConnectionState.CONNECTED:    [ConnectionState.DISCONNECTED],
}


class ConnectionStateMachine:
    """
    Tracks the link state and enforces legal transitions.

    Listeners registered with `add_listener` are called with
    (previous, new) after every successful transition.
    """

    def __init__(self):
        self.state = ConnectionState.DISCONNECTED
        self._state_entry_time = time.monotonic()
        self._lock = threading.Lock()
        self._listeners = []

    @property
    def time_in_state(self) -> float:
        return time.monotonic() - self._state_entry_time

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def add_listener(self, callback):
        self._listeners.append(callback)

    def begin_connect(self):
        """Enter CONNECTING, refusing if a connect is already running."""
        with self._lock:
            if self.state is ConnectionState.CONNECTING:
                raise ConnectionStateError("Connect already in progress")
            if self.state is not ConnectionState.DISCONNECTED:
                raise ConnectionStateError(
                    f"Cannot connect from {self.state.value}"
                )
            prev = self._set(ConnectionState.CONNECTING)
        self._notify(prev, ConnectionState.CONNECTING)

    def transition(self, target: ConnectionState) -> bool:
        """Execute a validated state transition."""
        with self._lock:
            if target is self.state:
                return False
            if target not in _TRANSITIONS.get(self.state, []):
                logger.warning(
                    "Illegal transition %s -> %s", self.state.value, target.value
                )
                return False
            prev = self._set(target)
        self._notify(prev, target)
        return True

    def _set(self, target: ConnectionState) -> ConnectionState:
        prev = self.state
        logger.info("Link state: %s -> %s", prev.value, target.value)
        self.state = target
        self._state_entry_time = time.monotonic()
        return prev

    def _notify(self, prev: ConnectionState, new: ConnectionState):
        for callback in list(self._listeners):
            try:
                callback(prev, new)
            except Exception:
                logger.exception("Link state listener failed")
