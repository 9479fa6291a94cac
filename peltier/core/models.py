"""
Runtime Value Types
====================
Immutable values passed between the driver, the control loop,
the strategies and the governor within a scan cycle.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class TemperatureSource(Enum):
    DEVICE = "device"
    SYNTHETIC = "synthetic"


class ActuatorState(Enum):
    ON = "on"
    OFF = "off"
    UNKNOWN = "unknown"    # Unobservable; never assume OFF

    @classmethod
    def from_bool(cls, value: bool) -> "ActuatorState":
        return cls.ON if value else cls.OFF


@dataclass(frozen=True)
class TemperatureReading:
    """A single container temperature sample."""
    value: float                      # °C, one decimal of precision
    timestamp: float = field(default_factory=time.time)
    source: TemperatureSource = TemperatureSource.DEVICE
    method: str = ""                  # batch-primary, batch-fallback, synthetic
    raw: Optional[int] = None         # Raw register value for device reads

    def __post_init__(self):
        object.__setattr__(self, "value", round(float(self.value), 1))

    @property
    def is_synthetic(self) -> bool:
        return self.source is TemperatureSource.SYNTHETIC

    def as_dict(self) -> dict:
        return {
            "value": self.value,
            "timestamp": self.timestamp,
            "source": self.source.value,
            "method": self.method,
            "raw": self.raw,
        }


@dataclass(frozen=True)
class ActuatorIntent:
    """What a strategy wants one actuator to do this tick."""
    actuator_id: int
    desired_on: bool
    duty_cycle: Optional[float] = None   # 0..100 when the strategy uses PWM

    def __post_init__(self):
        if self.duty_cycle is not None and not 0.0 <= self.duty_cycle <= 100.0:
            raise ValueError(f"Duty cycle out of range: {self.duty_cycle}")


@dataclass(frozen=True)
class ControlOutput:
    """Result of one accepted strategy update."""
    intents: tuple
    diagnostics: dict = field(default_factory=dict)

    def intent_for(self, actuator_id: int) -> Optional[ActuatorIntent]:
        for intent in self.intents:
            if intent.actuator_id == actuator_id:
                return intent
        return None
