"""
Control Strategy Contract
==========================
Every strategy turns container temperature samples into per-actuator
intents. The control loop holds one instance per kind and exactly one
active kind; selecting a kind resets and configures only that
instance.

Lifecycle:

    configure(setpoint) ──► update(T, now) ... ──► reset()
                                │
                                └── None inside the sample interval

Strategies never enforce dwell times themselves. The intents they
return go through the ActuationGovernor, which reports back what it
let through via `notify_applied()`.
"""

import dataclasses
import logging
import math
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional

from peltier.core.errors import ControlError
from peltier.core.models import ActuatorIntent, ControlOutput

logger = logging.getLogger(__name__)


class StrategyKind(Enum):
    HYSTERESIS = "hysteresis"
    PID_CASCADE = "pid-cascade"
    RBF_ADAPTIVE = "rbf-adaptive"
    NEURAL_MPC = "neural-mpc"

    @classmethod
    def parse(cls, value) -> "StrategyKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown strategy {value!r} (valid: {valid})") from None


def apply_tuning(tuning, overrides: Optional[dict]):
    """Return a copy of a tuning dataclass with known overrides applied."""
    if not overrides:
        return tuning
    names = {f.name: f for f in dataclasses.fields(tuning)}
    changes = {}
    for key, value in overrides.items():
        if key not in names:
            logger.warning("Ignoring unknown tuning parameter %s", key)
            continue
        current = getattr(tuning, key)
        changes[key] = type(current)(value) if current is not None else value
    return dataclasses.replace(tuning, **changes)


class ControlStrategy(ABC):
    """
    Base class for temperature control strategies.

    Subclasses set `kind` and `tuning_class` and implement `_compute`
    and `_reset_state`. `tuning_class` must be a dataclass with a
    `sample_interval` field.
    """

    kind: StrategyKind
    tuning_class = None

    def __init__(self, tuning=None, actuator_ids=(1, 2),
                 min_valid_temp: float = -50.0, max_valid_temp: float = 150.0):
        self.tuning = tuning if tuning is not None else self.tuning_class()
        self.actuator_ids = tuple(actuator_ids)
        self.min_valid_temp = min_valid_temp
        self.max_valid_temp = max_valid_temp
        self.setpoint: Optional[float] = None
        self._last_update: Optional[float] = None
        self._updates = 0
        self._reset_state()

    def configure(self, setpoint: float, tuning=None):
        """Set the target and optional tuning overrides; clears all state."""
        if isinstance(tuning, dict):
            self.tuning = apply_tuning(self.tuning, tuning)
        elif tuning is not None:
            self.tuning = tuning
        self.setpoint = float(setpoint)
        self.reset()
        logger.debug("%s configured for %.1f °C", self.kind.value, self.setpoint)

    def reset(self):
        self._last_update = None
        self._updates = 0
        self._reset_state()

    def update(self, temperature: float, now: float) -> Optional[ControlOutput]:
        """
        Compute actuator intents for one sample.

        Returns None when called within `sample_interval` of the last
        accepted sample. Raises ControlError for non-finite or
        out-of-range temperatures.
        """
        if self.setpoint is None:
            raise ControlError(f"{self.kind.value} strategy used before configure()")
        self._validate(temperature)

        if self._last_update is None:
            dt = self.tuning.sample_interval
        else:
            dt = now - self._last_update
            if dt < self.tuning.sample_interval:
                return None

        self._last_update = now
        self._updates += 1
        return self._compute(float(temperature), now, dt)

    def _validate(self, temperature):
        try:
            value = float(temperature)
        except (TypeError, ValueError):
            raise ControlError(f"Temperature is not a number: {temperature!r}") from None
        if not math.isfinite(value):
            raise ControlError(f"Non-finite temperature: {value}")
        if not self.min_valid_temp <= value <= self.max_valid_temp:
            raise ControlError(
                f"Temperature {value:.1f} °C outside "
                f"[{self.min_valid_temp}, {self.max_valid_temp}]"
            )

    def metrics(self) -> dict:
        data = {
            "kind": self.kind.value,
            "setpoint": self.setpoint,
            "updates": self._updates,
        }
        data.update(self._metrics())
        return data

    def notify_applied(self, states: dict):
        """Governed actuator states actually applied for the last decision."""

    def _intents(self, desired: dict, duties: Optional[dict] = None) -> tuple:
        duties = duties or {}
        return tuple(
            ActuatorIntent(aid, bool(desired.get(aid, False)), duties.get(aid))
            for aid in self.actuator_ids
        )

    @abstractmethod
    def _compute(self, temperature: float, now: float, dt: float) -> ControlOutput:
        ...

    @abstractmethod
    def _reset_state(self):
        ...

    def _metrics(self) -> dict:
        return {}


def create_strategy(kind, tuning: Optional[dict] = None, **kwargs) -> ControlStrategy:
    """Build a strategy instance of the given kind."""
    from peltier.strategies.hysteresis import HysteresisStrategy
    from peltier.strategies.pid_cascade import PIDCascadeStrategy
    from peltier.strategies.rbf_adaptive import RBFAdaptiveStrategy
    from peltier.strategies.neural_mpc import NeuralMPCStrategy

    registry = {
        StrategyKind.HYSTERESIS: HysteresisStrategy,
        StrategyKind.PID_CASCADE: PIDCascadeStrategy,
        StrategyKind.RBF_ADAPTIVE: RBFAdaptiveStrategy,
        StrategyKind.NEURAL_MPC: NeuralMPCStrategy,
    }
    cls = registry[StrategyKind.parse(kind)]
    strategy = cls(**kwargs)
    if tuning:
        strategy.tuning = apply_tuning(strategy.tuning, tuning)
    return strategy
