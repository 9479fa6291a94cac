"""
RBF Neural-Gain Adaptive PID
=============================
A small Gaussian radial-basis-function network maps the current
(error, error rate) onto Kp/Ki/Kd every tick; its weights learn
online by gradient descent with a forgetting factor.

Error convention: e = T - setpoint (positive means cooling needed).

Per tick:
  1. activations  a_i = exp(-(|x - c_i| / spread)^2)
  2. gains        K = clamp(sum(w_i * a_i) * scale, min_gain, max_gain)
                  scale = 1 + nonlinear_gain * |e| / 10 for Kp and Kd
  3. nonlinear PID with a P deadband and a power-law boost above
     |e| > 2; integral x0.7 when e changes sign, clamped +-10
  4. band mapping of the PID output onto the two Peltiers (edges and
     output gates in RBFTuning)
  5. weight update at rate learning_rate * exp(-|e|)
"""

import math
from collections import deque
from dataclasses import dataclass

from peltier.core.models import ControlOutput
from peltier.strategies.base import ControlStrategy, StrategyKind


@dataclass
class RBFTuning:
    num_centers: int = 5
    error_range: float = 20.0        # Centres span -10..+10 °C
    rate_range: float = 4.0          # Centres span -2..+2 °C/s
    spread: float = 2.0
    initial_weight: float = 0.1
    learning_rate: float = 0.01
    beta: float = 0.95               # Forgetting factor
    min_gain: float = 0.1
    max_gain: float = 10.0
    nonlinear_gain: float = 1.5
    error_deadband: float = 0.1
    boost_threshold: float = 2.0
    boost_factor: float = 0.5
    boost_exponent: float = 1.3
    integral_limit: float = 10.0
    sign_change_decay: float = 0.7
    kp_weight_limit: float = 1.0
    ki_weight_limit: float = 0.5
    kd_weight_limit: float = 0.5
    sample_interval: float = 0.5
    history_size: int = 50
    gain_history_size: int = 50
    # Band edges on the error
    both_error: float = 2.0
    high_error: float = 1.0
    single_error: float = 0.5
    maintain_error: float = -0.5
    # PID output gates per band
    both_p2_output: float = 3.0
    high_p1_output: float = 1.0
    high_p2_output: float = 5.0
    single_p1_output: float = 0.5
    maintain_p1_output: float = 2.0


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class RBFAdaptiveStrategy(ControlStrategy):
    """PID whose gains come from an online-trained RBF network."""

    kind = StrategyKind.RBF_ADAPTIVE
    tuning_class = RBFTuning

    def _reset_state(self):
        t = self.tuning
        n = t.num_centers
        if n < 2:
            raise ValueError("RBF network needs at least two centres")
        self.centers = [
            (-t.error_range / 2 + i * t.error_range / (n - 1),
             -t.rate_range / 2 + i * t.rate_range / (n - 1))
            for i in range(n)
        ]
        self.weights = {
            "kp": [t.initial_weight] * n,
            "ki": [t.initial_weight] * n,
            "kd": [t.initial_weight] * n,
        }
        self.kp = self.ki = self.kd = t.min_gain
        self.integral = 0.0
        self._last_error = 0.0
        self._errors = deque(maxlen=t.history_size)
        self.gain_history = deque(maxlen=t.gain_history_size)

    # ── Network ──────────────────────────────────────────────

    def activations(self, error: float, error_dot: float) -> list:
        spread = self.tuning.spread
        result = []
        for ce, cr in self.centers:
            distance = math.hypot(error - ce, error_dot - cr)
            result.append(math.exp(-((distance / spread) ** 2)))
        return result

    def adapt_gains(self, error: float, acts: list):
        t = self.tuning
        kp = sum(w * a for w, a in zip(self.weights["kp"], acts))
        ki = sum(w * a for w, a in zip(self.weights["ki"], acts))
        kd = sum(w * a for w, a in zip(self.weights["kd"], acts))
        scale = 1.0 + t.nonlinear_gain * abs(error) / 10.0
        self.kp = _clamp(kp * scale, t.min_gain, t.max_gain)
        self.ki = _clamp(ki, t.min_gain, t.max_gain)
        self.kd = _clamp(kd * scale, t.min_gain, t.max_gain)

    def update_weights(self, error: float, error_dot: float, acts: list):
        t = self.tuning
        rate = t.learning_rate * math.exp(-abs(error))
        limits = {
            "kp": t.kp_weight_limit,
            "ki": t.ki_weight_limit,
            "kd": t.kd_weight_limit,
        }
        signals = {"kp": abs(error), "ki": self.integral, "kd": error_dot}
        for name, weights in self.weights.items():
            limit = limits[name]
            for i, act in enumerate(acts):
                w = t.beta * weights[i] - rate * error * act * signals[name]
                weights[i] = _clamp(w, -limit, limit)

    # ── PID ──────────────────────────────────────────────────

    def compute_pid(self, error: float, error_dot: float, dt: float) -> dict:
        t = self.tuning
        p_term = 0.0
        if abs(error) > t.error_deadband:
            p_term = self.kp * error
            if abs(error) > t.boost_threshold:
                p_term += (math.copysign(1.0, error) * self.kp * t.boost_factor
                           * (abs(error) - t.boost_threshold) ** t.boost_exponent)

        self.integral += error * dt
        if (error > 0 > self._last_error) or (error < 0 < self._last_error):
            self.integral *= t.sign_change_decay
        self.integral = _clamp(self.integral, -t.integral_limit, t.integral_limit)
        i_term = self.ki * self.integral
        d_term = self.kd * error_dot
        self._last_error = error
        return {"P": p_term, "I": i_term, "D": d_term, "total": p_term + i_term + d_term}

    def _bands(self, error: float, output: float) -> tuple:
        t = self.tuning
        if error > t.both_error:
            return True, output > t.both_p2_output
        if error > t.high_error:
            return output > t.high_p1_output, output > t.high_p2_output
        if error > t.single_error:
            return output > t.single_p1_output, False
        if error > t.maintain_error:
            return output > t.maintain_p1_output, False
        return False, False

    def _compute(self, temperature: float, now: float, dt: float) -> ControlOutput:
        error = temperature - self.setpoint
        error_dot = (error - self._errors[-1]) / dt if self._errors else 0.0

        acts = self.activations(error, error_dot)
        self.adapt_gains(error, acts)
        self.gain_history.append(self.gains)
        pid = self.compute_pid(error, error_dot, dt)
        p1, p2 = self._bands(error, pid["total"])
        self.update_weights(error, error_dot, acts)
        self._errors.append(error)

        return ControlOutput(
            intents=self._intents({1: p1, 2: p2}),
            diagnostics={
                "strategy": self.kind.value,
                "temperature": temperature,
                "setpoint": self.setpoint,
                "error": error,
                "error_dot": error_dot,
                "pid": pid,
                "gains": self.gains,
                "activations": acts,
                "stable": abs(error) < 0.3 and abs(error_dot) < 0.1,
            },
        )

    @property
    def gains(self) -> dict:
        return {"kp": self.kp, "ki": self.ki, "kd": self.kd}

    def is_stable(self) -> bool:
        """Recent error small and still shrinking."""
        if len(self._errors) < 10:
            return False
        recent = [abs(e) for e in list(self._errors)[-10:]]
        avg = sum(recent) / len(recent)
        trend = sum(recent[-5:]) / 5
        return avg < 1.0 and trend < avg

    def _metrics(self) -> dict:
        recent = [abs(e) for e in list(self._errors)[-10:]]
        return {
            "avg_error": sum(recent) / len(recent) if recent else 0.0,
            "gains": self.gains,
            "integral": self.integral,
            "stable": self.is_stable(),
            "learning_active": len(self._errors) > 5,
            "centers": len(self.centers),
            "gain_history": list(self.gain_history),
        }
