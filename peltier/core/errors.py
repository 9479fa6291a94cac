"""
Error Taxonomy
===============
Every failure the controller can observe maps to one of these
classes, so callers can tell "device unreachable" apart from
"device rejected this request" apart from "bad data".

    PeltierError
     ├── TransportError        (recoverable by reconnect/backoff)
     │    ├── RequestTimeout
     │    ├── ConnectionClosed
     │    └── ConnectRefused
     ├── ProtocolError         (malformed frame; connection stays up)
     ├── DeviceException       (PLC answered with an exception code)
     ├── ReadFailed            (temperature fallback chain exhausted)
     ├── WriteFailed           (coil/register fallback exhausted)
     ├── ControlError          (non-finite / out-of-range temperature)
     ├── ConnectionStateError  (lifecycle transition not permitted)
     └── CommandRejected       (operator command not allowed now)
"""

from typing import Optional


class PeltierError(Exception):
    """Base class for all controller errors."""


# ── Transport ────────────────────────────────────────────────

class TransportError(PeltierError):
    """The link to the PLC failed; recoverable by reconnecting."""
    reason = "transport"


class RequestTimeout(TransportError):
    reason = "timeout"


class ConnectionClosed(TransportError):
    reason = "connection-reset"


class ConnectRefused(TransportError):
    reason = "connect-refused"


# ── Protocol / Device ────────────────────────────────────────

class ProtocolError(PeltierError):
    """A frame or PDU did not follow the wire format."""

    def __init__(self, message: str, transaction_id: Optional[int] = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class DeviceException(PeltierError):
    """The PLC rejected a request with a Modbus exception code."""

    def __init__(self, function_code: int, exception_code: int):
        self.function_code = function_code
        self.exception_code = exception_code
        super().__init__(
            f"Device exception {self.exception_name} "
            f"(code {exception_code}) for function 0x{function_code:02X}"
        )

    @property
    def exception_name(self) -> str:
        from peltier.drivers.frame_codec import ExceptionCode
        try:
            return ExceptionCode(self.exception_code).name
        except ValueError:
            return "UNKNOWN"


class ReadFailed(PeltierError):
    """Every block in the temperature read chain failed."""

    def __init__(self, message: str, causes: Optional[list] = None):
        super().__init__(message)
        self.causes = list(causes or [])


class WriteFailed(PeltierError):
    """Both the coil write and the register fallback failed."""

    def __init__(self, message: str, causes: Optional[list] = None):
        super().__init__(message)
        self.causes = list(causes or [])


# ── Control / Commands ───────────────────────────────────────

class ControlError(PeltierError):
    """A strategy was handed a temperature it must not act on."""


class ConnectionStateError(PeltierError):
    """A connection lifecycle transition is not allowed right now."""


class CommandRejected(PeltierError):
    """An operator command is not allowed in the current mode."""
