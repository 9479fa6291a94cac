"""
PID + PWM Cascade Controller
=============================
Cooling-oriented discrete PID whose 0..100 % output is split across
the two Peltiers and turned into on/off commands by slow PWM.

PID (error = setpoint - T, negative when cooling is needed):
  - Integral grows by |e|*dt while above setpoint and shrinks by
    e*dt below it, clamped to [integral_min, integral_max]
  - Derivative is taken on the measurement, so a setpoint change
    causes no derivative kick

Cascade:
  output <= threshold  Peltier 1 duty = 2 x output, Peltier 2 idle
  output >  threshold  Peltier 1 duty = threshold + excess x ratio
                       Peltier 2 duty = excess x (1 - ratio) x 2

PWM:
  Each Peltier is on while time-in-cycle < duty/100 x period.
"""

from collections import deque
from dataclasses import dataclass
from typing import Optional

from peltier.core.models import ControlOutput
from peltier.strategies.base import ControlStrategy, StrategyKind


@dataclass
class PIDCascadeTuning:
    kp: float = 3.0
    ki: float = 0.8
    kd: float = 0.2
    sample_interval: float = 1.0
    integral_min: float = 0.0
    integral_max: float = 100.0
    output_max: float = 100.0
    cascade_threshold: float = 50.0
    balance_ratio: float = 0.6
    pwm_period: float = 10.0


class PWMChannel:
    """Fixed-period PWM for one actuator."""

    def __init__(self, period: float = 10.0):
        if period <= 0:
            raise ValueError("PWM period must be positive")
        self.period = period
        self.duty_cycle = 0.0
        self.is_on = False
        self._cycle_start: Optional[float] = None

    def set_duty_cycle(self, duty: float):
        self.duty_cycle = max(0.0, min(100.0, duty))

    def state(self, now: float) -> bool:
        if self._cycle_start is None:
            self._cycle_start = now
        cycle_time = (now - self._cycle_start) % self.period
        on_time = self.duty_cycle / 100.0 * self.period
        if now - self._cycle_start >= self.period:
            self._cycle_start = now
        self.is_on = cycle_time < on_time and self.duty_cycle > 0
        return self.is_on

    def reset(self):
        self.duty_cycle = 0.0
        self.is_on = False
        self._cycle_start = None


class PIDCascadeStrategy(ControlStrategy):
    """
    PID output distributed over two Peltiers with PWM.

    Intents carry both the PWM on/off decision and the duty cycle
    that produced it.
    """

    kind = StrategyKind.PID_CASCADE
    tuning_class = PIDCascadeTuning

    def _reset_state(self):
        self.integral = 0.0
        self._last_input = None
        self._pwm = {aid: PWMChannel(self.tuning.pwm_period) for aid in self.actuator_ids}
        self._errors = deque(maxlen=100)
        self._outputs = deque(maxlen=100)

    def compute_pid(self, temperature: float, dt: float) -> dict:
        """One PID step; returns the terms and the clamped output."""
        t = self.tuning
        error = self.setpoint - temperature
        p_term = t.kp * error

        if error < 0:
            self.integral += abs(error) * dt
        else:
            self.integral -= error * dt
        self.integral = max(t.integral_min, min(t.integral_max, self.integral))
        i_term = t.ki * self.integral

        d_term = 0.0
        if self._last_input is not None:
            d_term = -t.kd * (temperature - self._last_input) / dt
        self._last_input = temperature

        if error < 0:
            output = abs(p_term) + i_term + abs(d_term)
        else:
            output = max(0.0, -p_term + i_term - d_term)
        output = max(0.0, min(t.output_max, output))

        return {"error": error, "P": p_term, "I": i_term, "D": d_term,
                "output": output, "integral": self.integral}

    def split(self, output: float) -> tuple:
        """Cascade rule: PID output -> (duty 1, duty 2)."""
        t = self.tuning
        if output <= t.cascade_threshold:
            return min(100.0, output * 2.0), 0.0
        excess = output - t.cascade_threshold
        duty1 = t.cascade_threshold + excess * t.balance_ratio
        duty2 = excess * (1.0 - t.balance_ratio) * 2.0
        return min(100.0, duty1), min(100.0, duty2)

    def _compute(self, temperature: float, now: float, dt: float) -> ControlOutput:
        pid = self.compute_pid(temperature, dt)
        self._errors.append(abs(pid["error"]))
        self._outputs.append(pid["output"])

        duties = dict(zip(self.actuator_ids, self.split(pid["output"])))
        desired = {}
        for aid, channel in self._pwm.items():
            channel.set_duty_cycle(duties.get(aid, 0.0))
            desired[aid] = channel.state(now)
            duties[aid] = channel.duty_cycle

        diagnostics = {
            "strategy": self.kind.value,
            "temperature": temperature,
            "setpoint": self.setpoint,
            "total_output": pid["output"],
            "duty_cycles": dict(duties),
        }
        diagnostics.update(pid)
        return ControlOutput(
            intents=self._intents(desired, duties),
            diagnostics=diagnostics,
        )

    def _metrics(self) -> dict:
        data = {
            "integral": self.integral,
            "duty_cycles": {aid: ch.duty_cycle for aid, ch in self._pwm.items()},
        }
        if self._errors:
            data.update({
                "mae": sum(self._errors) / len(self._errors),
                "max_error": max(self._errors),
                "min_error": min(self._errors),
                "avg_output": sum(self._outputs) / len(self._outputs),
            })
        return data
