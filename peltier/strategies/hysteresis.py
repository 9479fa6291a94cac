"""
Hysteresis Band Controller
===========================
Maps the temperature error onto fixed bands, using a small internal
PID only to decide the conditional cases. Tuned for stability rather
than tight tracking.

Default bands (error = T - setpoint, positive means cooling needed),
all adjustable through HysteresisTuning:

    e > 2.0          both Peltiers on
    1.0 < e <= 2.0   Peltier 1 on, Peltier 2 on if output > 50
    0.5 < e <= 1.0   Peltier 1 only
   -0.5 < e <= 0.5   Peltier 1 on if output > 10 (low-duty maintain)
    e <= -0.5        both off
"""

from collections import deque
from dataclasses import dataclass

from peltier.core.models import ControlOutput
from peltier.strategies.base import ControlStrategy, StrategyKind


@dataclass
class HysteresisTuning:
    kp: float = 3.0
    ki: float = 0.1
    kd: float = 0.5
    integral_limit: float = 20.0
    sample_interval: float = 0.5
    tolerance: float = 0.5
    stable_window: int = 10
    stable_spread: float = 0.3
    # Band edges on the error and output gates on the internal PID
    both_on_error: float = 2.0
    boost_error: float = 1.0
    single_error: float = 0.5
    maintain_error: float = -0.5
    boost_output: float = 50.0
    maintain_output: float = 10.0


class HysteresisStrategy(ControlStrategy):
    """Band controller with a clamped internal PID."""

    kind = StrategyKind.HYSTERESIS
    tuning_class = HysteresisTuning

    def _reset_state(self):
        self.integral = 0.0
        self._last_temp = None
        self._history = deque(maxlen=20)

    def _compute(self, temperature: float, now: float, dt: float) -> ControlOutput:
        t = self.tuning
        self._history.append(temperature)
        error = temperature - self.setpoint

        p_term = t.kp * error
        self.integral += error * dt
        self.integral = max(-t.integral_limit, min(t.integral_limit, self.integral))
        i_term = t.ki * self.integral
        d_term = 0.0
        if self._last_temp is not None:
            d_term = t.kd * (temperature - self._last_temp) / dt
        output = max(0.0, min(100.0, p_term + i_term + d_term))
        self._last_temp = temperature

        p1, p2 = self._bands(error, output)
        return ControlOutput(
            intents=self._intents({1: p1, 2: p2}),
            diagnostics={
                "strategy": self.kind.value,
                "temperature": temperature,
                "setpoint": self.setpoint,
                "error": error,
                "P": p_term,
                "I": i_term,
                "D": d_term,
                "output": output,
                "stable": self.is_stable(),
            },
        )

    def _bands(self, error: float, output: float) -> tuple:
        t = self.tuning
        if error > t.both_on_error:
            return True, True
        if error > t.boost_error:
            return True, output > t.boost_output
        if error > t.single_error:
            return True, False
        if error > t.maintain_error:
            return output > t.maintain_output, False
        return False, False

    def is_stable(self) -> bool:
        """Last readings tight around their mean, and the mean on target."""
        t = self.tuning
        if len(self._history) < t.stable_window:
            return False
        recent = list(self._history)[-t.stable_window:]
        avg = sum(recent) / len(recent)
        spread = max(abs(v - avg) for v in recent)
        return spread < t.stable_spread and abs(avg - self.setpoint) < t.tolerance

    def _metrics(self) -> dict:
        current = self._history[-1] if self._history else None
        return {
            "integral": self.integral,
            "current_error": abs(current - self.setpoint) if current is not None else None,
            "stable": self.is_stable(),
        }
