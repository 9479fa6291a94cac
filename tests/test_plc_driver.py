"""
Tests for the GMT PLC device driver (batch quirk and write fallback).
"""

import pytest

from peltier.core.errors import DeviceException, ReadFailed, WriteFailed
from peltier.core.models import ActuatorState, TemperatureSource
from peltier.drivers.frame_codec import ExceptionCode, FunctionCode, ReadRequest
from peltier.drivers.plc_driver import PLCDriver


@pytest.fixture
def driver(fake_transport, io_map):
    return PLCDriver(fake_transport, io_map)


class TestTemperatureRead:

    def test_primary_block(self, driver, fake_device):
        reading = driver.read_temperature()
        assert reading.value == 22.4
        assert reading.method == "batch-primary"
        assert reading.source is TemperatureSource.DEVICE
        assert reading.raw == 224
        last = fake_device.requests[-1]
        assert (last.address, last.count) == (2026, 10)

    def test_negative_temperature(self, driver, fake_device):
        fake_device.registers[2026] = 65506
        assert driver.read_temperature().value == -3.0

    def test_single_register_read_refused(self, driver):
        with pytest.raises(DeviceException) as exc_info:
            driver.read_holding_registers(2026, 1)
        assert exc_info.value.exception_code == ExceptionCode.ILLEGAL_DATA_ADDRESS

    def test_fallback_block(self, driver, fake_device):
        fake_device.refused_blocks.add(2026)
        reading = driver.read_temperature()
        assert reading.value == 22.4
        assert reading.method == "batch-fallback"
        last = fake_device.requests[-1]
        assert (last.address, last.count) == (2020, 10)

    @pytest.mark.parametrize("celsius", [-12.5, 0.0, 4.9, 22.4, 85.1])
    def test_primary_and_fallback_agree(self, driver, fake_device, celsius):
        fake_device.set_temperature(celsius)
        primary = driver.read_temperature()
        fake_device.refused_blocks.add(2026)
        fallback = driver.read_temperature()
        assert primary.value == fallback.value == celsius

    def test_both_blocks_fail(self, driver, fake_device):
        fake_device.refused_blocks.update({2026, 2020})
        with pytest.raises(ReadFailed) as exc_info:
            driver.read_temperature()
        causes = exc_info.value.causes
        assert len(causes) == 2
        assert all(isinstance(c, DeviceException) for c in causes)

    def test_timeout_falls_through(self, driver, fake_transport):
        fake_transport.silent = True
        with pytest.raises(ReadFailed):
            driver.read_temperature()


class TestActuatorWrites:

    def test_coil_write(self, driver, fake_device):
        assert driver.set_actuator(1, True) == "coil"
        assert fake_device.coil(1) is True
        assert driver.read_actuator(1) is ActuatorState.ON

    def test_register_fallback_when_coil_rejected(self, driver, fake_device):
        fake_device.failing[FunctionCode.WRITE_SINGLE_COIL] = ExceptionCode.ILLEGAL_FUNCTION
        assert driver.set_actuator(2, True) == "register"
        assert fake_device.registers[4] == 1

    def test_register_fallback_on_echo_mismatch(self, driver, fake_device):
        fake_device.bad_coil_echo = True
        assert driver.set_actuator(1, False) == "register"
        assert fake_device.registers[2] == 0

    def test_both_paths_fail(self, driver, fake_device):
        fake_device.failing[FunctionCode.WRITE_SINGLE_COIL] = ExceptionCode.ILLEGAL_FUNCTION
        fake_device.failing[FunctionCode.WRITE_SINGLE_REGISTER] = ExceptionCode.SERVER_DEVICE_FAILURE
        with pytest.raises(WriteFailed) as exc_info:
            driver.set_actuator(1, True)
        assert len(exc_info.value.causes) == 2

    def test_unknown_actuator(self, driver):
        with pytest.raises(ValueError):
            driver.set_actuator(7, True)

    def test_read_actuator_unknown_when_unobservable(self, driver, fake_transport):
        fake_transport.silent = True
        assert driver.read_actuator(1) is ActuatorState.UNKNOWN

    def test_read_actuator_register_fallback(self, driver, fake_device):
        fake_device.failing[FunctionCode.READ_COILS] = ExceptionCode.ILLEGAL_FUNCTION
        fake_device.registers[4] = 1
        assert driver.read_actuator(2) is ActuatorState.ON


class TestProbe:

    def test_probe_reads_one_register(self, driver, fake_device):
        assert driver.probe() is True
        last = fake_device.requests[-1]
        assert last == ReadRequest(FunctionCode.READ_HOLDING_REGISTERS, 2, 1)

    def test_probe_failure_is_reported(self, driver, fake_transport):
        fake_transport.silent = True
        assert driver.probe() is False
