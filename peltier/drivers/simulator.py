"""
Container Thermal Simulator
============================
First-order thermal model of the cooled container, used for offline
development and as the control loop's declared synthetic source:

  - Container drifts towards ambient through its insulation
  - Each running Peltier pulls heat out at a fixed rate
  - Small gaussian noise on every sample

The same model drives the bench PLC, so the whole stack can be
exercised end to end without hardware.
"""

import logging
import random
from typing import Optional

from peltier.core.models import TemperatureReading, TemperatureSource

logger = logging.getLogger(__name__)


class ContainerThermalModel:
    """
    Lumped-capacity container model.

        dT/dt = (ambient - T) / tau - sum(cooling_rate for running Peltiers)
    """

    def __init__(
        self,
        initial_temp: float = 22.0,
        ambient_temp: float = 22.0,
        time_constant_sec: float = 600.0,
        cooling_rates: Optional[dict] = None,
        noise_c: float = 0.02,
        min_temp: float = -20.0,
        rng: random.Random = None,
    ):
        if time_constant_sec <= 0:
            raise ValueError("Time constant must be positive")
        self.temperature = initial_temp
        self.ambient_temp = ambient_temp
        self.time_constant_sec = time_constant_sec
        # °C per second removed by each Peltier while running
        self.cooling_rates = cooling_rates or {1: 0.05, 2: 0.04}
        self.noise_c = noise_c
        self.min_temp = min_temp
        self.rng = rng or random.Random()
        self._actuators = {aid: False for aid in self.cooling_rates}

    def set_actuator(self, actuator_id: int, on: bool):
        self._actuators[actuator_id] = bool(on)

    def actuator(self, actuator_id: int) -> bool:
        return self._actuators.get(actuator_id, False)

    @property
    def actuators(self) -> dict:
        return dict(self._actuators)

    def set_temperature(self, temp_c: float):
        """Override the container temperature for testing."""
        self.temperature = temp_c

    def step(self, dt: float) -> float:
        """Advance the model by `dt` seconds and return the new temperature."""
        if dt <= 0:
            return self.temperature
        drift = (self.ambient_temp - self.temperature) / self.time_constant_sec
        cooling = sum(
            self.cooling_rates.get(aid, 0.0)
            for aid, on in self._actuators.items() if on
        )
        self.temperature += (drift - cooling) * dt
        if self.noise_c:
            self.temperature += self.rng.gauss(0, self.noise_c)
        self.temperature = max(self.min_temp, self.temperature)
        return self.temperature


class SyntheticTemperatureFeed:
    """
    Declared stand-in temperature source for when the PLC cannot be read.

    Picks up from the last real reading and follows the governed
    actuator states, so control and dwell logic keep running on
    plausible data. Every reading is tagged SYNTHETIC.
    """

    def __init__(self, model: ContainerThermalModel = None):
        self.model = model or ContainerThermalModel()
        self._last_time: Optional[float] = None
        self.active = False

    def activate(self, last_reading: Optional[TemperatureReading], now: float):
        """Start producing readings, continuing from `last_reading`."""
        if last_reading is not None:
            self.model.set_temperature(last_reading.value)
        self._last_time = now
        self.active = True
        logger.warning(
            "Synthetic temperature feed active from %.1f °C", self.model.temperature
        )

    def deactivate(self):
        if self.active:
            logger.info("Synthetic temperature feed stopped")
        self.active = False
        self._last_time = None

    def set_actuators(self, states: dict):
        for aid, on in states.items():
            self.model.set_actuator(aid, on)

    def read(self, now: float) -> TemperatureReading:
        dt = 0.0 if self._last_time is None else now - self._last_time
        self._last_time = now
        value = self.model.step(dt)
        return TemperatureReading(
            value=value,
            source=TemperatureSource.SYNTHETIC,
            method="synthetic",
        )
