"""
Bench PLC Emulator
===================
Serves a GMT PLC look-alike over Modbus/TCP with pymodbus, backed by
the container thermal model, so the controller can run end to end on
a workstation.

Register layout:
  - Holding register 2026: container temperature, signed tenths of °C
  - Coils 2 and 4: Peltier 1 and Peltier 2

Like the real controller, register 2026 is only served inside a
batch read: any holding-register read shorter than 10 registers that
covers 2026 is refused with ILLEGAL_DATA_ADDRESS.

The server runs its own asyncio loop in a background thread.
"""

import asyncio
import logging
import threading
from typing import Optional

from pymodbus.datastore import (
    ModbusDeviceContext,
    ModbusSequentialDataBlock,
    ModbusServerContext,
)
from pymodbus.server import ServerAsyncStop, StartAsyncTcpServer

from peltier.config.io_map import IOMap
from peltier.drivers.simulator import ContainerThermalModel

logger = logging.getLogger(__name__)

BLOCK_SIZE = 10000
FC_READ_COILS = 1
FC_READ_HOLDING = 3
FC_WRITE_HOLDING = 6


class BatchOnlyRegisterBlock(ModbusSequentialDataBlock):
    """
    Holding-register block that refuses short reads of one register.

    `offset` is the difference between the Modbus address on the wire
    and the address pymodbus hands to the block; it is detected once
    the block is installed in a device context.
    """

    def __init__(self, address: int, values: list, guarded_address: int, min_count: int):
        super().__init__(address, values)
        self.guarded_address = guarded_address
        self.min_count = min_count
        self.offset = 0
        self.refused = 0

    def validate(self, address, count=1):
        if not super().validate(address, count):
            return False
        start = address - self.offset
        if start <= self.guarded_address < start + count and count < self.min_count:
            self.refused += 1
            logger.debug(
                "Bench PLC refusing %d-register read at %d", count, start
            )
            return False
        return True


def detect_address_offset(device: ModbusDeviceContext, block: ModbusSequentialDataBlock,
                          function_code: int = FC_READ_HOLDING) -> int:
    """How far the device context shifts wire addresses before the block sees them."""
    marker = 0xA5A5
    device.setValues(function_code, 0, [marker])
    offset = next(
        (shift for shift in (0, 1) if block.values[shift - block.address] == marker),
        0,
    )
    device.setValues(function_code, 0, [0])
    return offset


class BenchPLC:
    """
    pymodbus Modbus/TCP server emulating the container PLC.

    Each tick the thermal model advances using the current coil states
    and the temperature register is refreshed.
    """

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 5020,
        io_map: IOMap = None,
        model: ContainerThermalModel = None,
        tick_sec: float = 1.0,
    ):
        self.host = host
        self.port = port
        self.io_map = io_map or IOMap()
        self.model = model or ContainerThermalModel(initial_temp=8.0)
        self.tick_sec = tick_sec

        tc = self.io_map.thermocouple
        self.registers = BatchOnlyRegisterBlock(
            0, [0] * BLOCK_SIZE, guarded_address=tc.address, min_count=tc.block_size,
        )
        self.coils = ModbusSequentialDataBlock(0, [False] * BLOCK_SIZE)
        self.device = ModbusDeviceContext(hr=self.registers, co=self.coils)
        self.context = ModbusServerContext(devices=self.device, single=True)
        self.registers.offset = detect_address_offset(self.device, self.registers)
        self.refresh()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    # ── Register Image ───────────────────────────────────────

    def refresh(self):
        """Mirror model temperature into the register and coils into the model."""
        for aid, act in self.io_map.actuators.items():
            coil = self.device.getValues(FC_READ_COILS, act.coil_address, 1)[0]
            self.model.set_actuator(aid, bool(coil))
        raw = int(round(self.model.temperature * self.io_map.thermocouple.scale))
        self.device.setValues(
            FC_WRITE_HOLDING, self.io_map.thermocouple.address, [raw & 0xFFFF]
        )

    def tick(self, dt: float = None):
        self.refresh()
        self.model.step(self.tick_sec if dt is None else dt)
        self.refresh()

    # ── Server Lifecycle ─────────────────────────────────────

    async def _serve(self):
        self._loop = asyncio.get_running_loop()
        server = asyncio.create_task(
            StartAsyncTcpServer(context=self.context, address=(self.host, self.port))
        )
        self._ready.set()
        logger.info("Bench PLC listening on %s:%d", self.host, self.port)
        try:
            while not server.done():
                self.tick()
                await asyncio.sleep(self.tick_sec)
        finally:
            if not server.done():
                server.cancel()

    def _run(self):
        try:
            asyncio.run(self._serve())
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Bench PLC server failed")
        finally:
            self._ready.set()

    def start(self, wait: float = 2.0):
        """Start the server in a background thread."""
        self._thread = threading.Thread(target=self._run, name="bench-plc", daemon=True)
        self._thread.start()
        self._ready.wait(timeout=wait)

    def stop(self):
        """Stop the server and join its thread."""
        if self._loop is not None and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(ServerAsyncStop(), self._loop)
            try:
                future.result(timeout=5.0)
            except Exception:
                logger.exception("Bench PLC stop failed")
        if self._thread:
            self._thread.join(timeout=5.0)
        logger.info("Bench PLC stopped")
