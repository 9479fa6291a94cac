"""
GMT PLC Device Driver
======================
Maps thermocouple reads and Peltier commands onto Modbus requests,
including the fallback chains the hardware needs.

Temperature (register 2026 batch quirk):
  1. Read holding registers 2026..2035, take offset 0
  2. On timeout or device exception, read 2020..2029, take offset 6
  3. Both failing raises ReadFailed carrying both causes

Peltier outputs:
  Write single coil; if the write fails or the echo does not match,
  write the same address as a holding register (1 = on, 0 = off).
"""

import logging
import math

from peltier.config.io_map import IOMap
from peltier.core.errors import (
    DeviceException,
    PeltierError,
    ProtocolError,
    ReadFailed,
    WriteFailed,
)
from peltier.core.models import ActuatorState, TemperatureReading
from peltier.drivers.frame_codec import (
    ExceptionResponse,
    FunctionCode,
    ReadBitsResponse,
    ReadRegistersResponse,
    ReadRequest,
    WriteCoilRequest,
    WriteCoilResponse,
    WriteRegisterRequest,
    WriteRegisterResponse,
    decode_response,
    to_signed16,
)

logger = logging.getLogger(__name__)


class PLCDriver:
    """
    Device-level operations on top of a Modbus transport.

    `transport` needs only `request(pdu, unit_id) -> bytes`, so tests
    can substitute an in-process fake for the socket transport.
    """

    def __init__(self, transport, io_map: IOMap = None, unit_id: int = 1):
        self.transport = transport
        self.io_map = io_map or IOMap()
        self.unit_id = unit_id

    def _execute(self, request, count: int = None):
        """Send one request PDU and decode the reply."""
        pdu = self.transport.request(request.encode(), self.unit_id)
        response = decode_response(pdu, count)
        if isinstance(response, ExceptionResponse):
            raise DeviceException(response.function_code, response.exception_code)
        if response.function_code != request.function_code:
            raise ProtocolError(
                f"Expected function 0x{request.function_code:02X}, "
                f"got 0x{response.function_code:02X}"
            )
        return response

    # ── Registers / Coils ────────────────────────────────────

    def read_holding_registers(self, address: int, count: int) -> list:
        request = ReadRequest(FunctionCode.READ_HOLDING_REGISTERS, address, count)
        response: ReadRegistersResponse = self._execute(request, count)
        return list(response.registers)

    def read_coils(self, address: int, count: int = 1) -> list:
        request = ReadRequest(FunctionCode.READ_COILS, address, count)
        response: ReadBitsResponse = self._execute(request, count)
        return list(response.bits)

    def write_coil(self, address: int, value: bool):
        response: WriteCoilResponse = self._execute(WriteCoilRequest(address, value))
        if response.address != address or response.value != value:
            raise ProtocolError(
                f"Coil echo mismatch: wrote {address}={value}, "
                f"device echoed {response.address}={response.value}"
            )

    def write_register(self, address: int, value: int):
        response: WriteRegisterResponse = self._execute(
            WriteRegisterRequest(address, value)
        )
        if response.address != address or response.value != value:
            raise ProtocolError(
                f"Register echo mismatch: wrote {address}={value}, "
                f"device echoed {response.address}={response.value}"
            )

    # ── Temperature ──────────────────────────────────────────

    def read_temperature(self) -> TemperatureReading:
        """Read the thermocouple through the batch fallback chain."""
        tc = self.io_map.thermocouple
        causes = []
        for method, start, offset in tc.blocks():
            try:
                registers = self.read_holding_registers(start, tc.block_size)
            except PeltierError as exc:
                logger.debug("Temperature %s read at %d failed: %s", method, start, exc)
                causes.append(exc)
                continue

            raw = registers[offset]
            value = to_signed16(raw) if tc.signed else raw
            celsius = value / tc.scale
            if not math.isfinite(celsius):
                causes.append(ProtocolError(f"Non-finite temperature from raw {raw}"))
                continue
            if causes:
                logger.info("Temperature served by %s block", method)
            return TemperatureReading(value=celsius, method=method, raw=raw)

        raise ReadFailed(
            "Thermocouple read failed on every batch block: "
            + "; ".join(str(c) for c in causes),
            causes=causes,
        )

    # ── Peltier Outputs ──────────────────────────────────────

    def set_actuator(self, actuator_id: int, on: bool) -> str:
        """Switch one Peltier; returns the method used ("coil" or "register")."""
        address = self.io_map.actuator(actuator_id).coil_address
        try:
            self.write_coil(address, on)
            return "coil"
        except PeltierError as coil_exc:
            logger.warning(
                "Coil write for actuator %d failed (%s); trying register",
                actuator_id, coil_exc,
            )
            try:
                self.write_register(address, 1 if on else 0)
                return "register"
            except PeltierError as reg_exc:
                raise WriteFailed(
                    f"Actuator {actuator_id} write failed: coil: {coil_exc}; "
                    f"register: {reg_exc}",
                    causes=[coil_exc, reg_exc],
                ) from reg_exc

    def read_actuator(self, actuator_id: int) -> ActuatorState:
        """Observed Peltier state; UNKNOWN when neither read path answers."""
        address = self.io_map.actuator(actuator_id).coil_address
        try:
            return ActuatorState.from_bool(self.read_coils(address, 1)[0])
        except PeltierError as exc:
            logger.debug("Coil read for actuator %d failed: %s", actuator_id, exc)
        try:
            return ActuatorState.from_bool(self.read_holding_registers(address, 1)[0] != 0)
        except PeltierError as exc:
            logger.warning("Actuator %d state unknown: %s", actuator_id, exc)
        return ActuatorState.UNKNOWN

    def probe(self) -> bool:
        """One-register read confirming the PLC answers on a fresh link."""
        address = min(a.coil_address for a in self.io_map.actuators.values())
        try:
            self.read_holding_registers(address, 1)
        except PeltierError as exc:
            logger.warning("PLC probe read failed: %s", exc)
            return False
        logger.info("PLC probe read succeeded")
        return True
