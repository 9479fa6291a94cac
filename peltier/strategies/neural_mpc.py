"""
Neural Model-Predictive Controller
===================================
Learns the container's one-step temperature response online and
picks actions by random-shooting MPC over a short horizon.

Model: 6 inputs -> 16 ReLU hidden -> 1 linear output, predicting the
next-step temperature delta (network output x 0.5). Inputs:

    [(T - sp)/10, p1, p2, (T_prev - sp)/10, p1_prev, p2_prev]

Training: after each applied decision the network is fitted to the
observed delta for (previous state, action actually applied) by
backpropagation with momentum. The learning rate decays x0.999
while predictions are within 0.1 °C and grows x1.001 (capped)
otherwise.

Planning: sample N action sequences over the horizon (cooling more
likely the warmer the container), roll each through the model plus a
fixed physical bias, score squared tracking error plus actuation
effort, and apply only the first action of the cheapest sequence.
"""

import math
import random
from collections import deque
from dataclasses import dataclass, field
from typing import Optional

from peltier.core.models import ControlOutput
from peltier.strategies.base import ControlStrategy, StrategyKind


@dataclass
class NeuralMPCTuning:
    hidden_size: int = 16
    learning_rate: float = 0.001
    max_learning_rate: float = 0.01
    lr_decay: float = 0.999
    lr_growth: float = 1.001
    accurate_error: float = 0.1      # |prediction error| counted as accurate
    momentum: float = 0.9
    output_scale: float = 0.5
    num_sequences: int = 20
    control_horizon: int = 3
    step_dt: float = 1.0             # Model time step used for the physical bias
    cooling_bias: float = 0.1        # °C per step when any Peltier runs
    ambient_bias: float = 0.05       # °C per step when idle
    effort_p1: float = 0.1
    effort_p2: float = 0.2
    confidence_window: int = 50
    confidence_band: float = 0.2
    sample_interval: float = 0.5
    seed: Optional[int] = None


class DeltaNetwork:
    """
    Fully-connected 1-hidden-layer regressor trained with momentum SGD.

    Pure Python: the network is tiny and runs once per tick plus a few
    dozen forward passes for planning.
    """

    INPUT_SIZE = 6

    def __init__(self, hidden_size: int = 16, rng: random.Random = None,
                 learning_rate: float = 0.001, momentum: float = 0.9):
        rng = rng or random.Random()
        self.hidden_size = hidden_size
        self.learning_rate = learning_rate
        self.momentum = momentum

        n_in = self.INPUT_SIZE
        std1 = math.sqrt(2.0 / (n_in + hidden_size))
        std2 = math.sqrt(2.0 / (hidden_size + 1))
        self.w1 = [[(rng.random() - 0.5) * 2 * std1 for _ in range(hidden_size)]
                   for _ in range(n_in)]
        self.b1 = [0.0] * hidden_size
        self.w2 = [(rng.random() - 0.5) * 2 * std2 for _ in range(hidden_size)]
        self.b2 = 0.0

        self._vw1 = [[0.0] * hidden_size for _ in range(n_in)]
        self._vb1 = [0.0] * hidden_size
        self._vw2 = [0.0] * hidden_size
        self._vb2 = 0.0

    def forward(self, inputs: list) -> tuple:
        """Return (output, hidden activations)."""
        hidden = []
        for j in range(self.hidden_size):
            total = self.b1[j]
            for i, x in enumerate(inputs):
                total += x * self.w1[i][j]
            hidden.append(total if total > 0 else 0.0)
        output = self.b2 + sum(h * w for h, w in zip(hidden, self.w2))
        return output, hidden

    def predict(self, inputs: list) -> float:
        return self.forward(inputs)[0]

    def train(self, inputs: list, target: float) -> float:
        """One backprop step towards `target` (raw output units); returns the loss."""
        output, hidden = self.forward(inputs)
        error = output - target
        d_out = 2.0 * error
        lr, mu = self.learning_rate, self.momentum

        for j in range(self.hidden_size):
            self._vw2[j] = mu * self._vw2[j] - lr * d_out * hidden[j]
            self.w2[j] += self._vw2[j]
        self._vb2 = mu * self._vb2 - lr * d_out
        self.b2 += self._vb2

        d_hidden = [d_out * self.w2[j] if hidden[j] > 0 else 0.0
                    for j in range(self.hidden_size)]
        for i, x in enumerate(inputs):
            row, vrow = self.w1[i], self._vw1[i]
            for j in range(self.hidden_size):
                vrow[j] = mu * vrow[j] - lr * d_hidden[j] * x
                row[j] += vrow[j]
        for j in range(self.hidden_size):
            self._vb1[j] = mu * self._vb1[j] - lr * d_hidden[j]
            self.b1[j] += self._vb1[j]

        return error * error


@dataclass
class ControlPlan:
    """Result of one random-shooting optimisation."""
    sequence: tuple                  # ((p1, p2), ...) over the horizon
    cost: float
    trajectory: list
    candidates: list = field(default_factory=list)   # [(sequence, cost), ...]

    @property
    def first_action(self) -> tuple:
        return self.sequence[0]


class NeuralMPCStrategy(ControlStrategy):
    """
    Random-shooting MPC over a learned one-step model.

    `model` may be any object with `predict(inputs) -> float` (and
    optionally `train(inputs, target)`); by default a DeltaNetwork is
    built from the seeded `rng`.
    """

    kind = StrategyKind.NEURAL_MPC
    tuning_class = NeuralMPCTuning

    def __init__(self, tuning=None, model=None, rng: random.Random = None, **kwargs):
        self._fixed_model = model
        self._rng_override = rng
        super().__init__(tuning=tuning, **kwargs)

    def _reset_state(self):
        t = self.tuning
        self.rng = self._rng_override or random.Random(t.seed)
        if self._fixed_model is not None:
            self.model = self._fixed_model
        else:
            self.model = DeltaNetwork(
                hidden_size=t.hidden_size, rng=self.rng,
                learning_rate=t.learning_rate, momentum=t.momentum,
            )
        self.learning_rate = t.learning_rate
        self._prev_temp: Optional[float] = None
        self._prev_prev_temp: Optional[float] = None
        self._prev_inputs: Optional[list] = None
        self._pending_inputs: Optional[list] = None
        self._last_applied = (False, False)
        self._predictions = 0
        self._accuracy = deque(maxlen=t.confidence_window)
        self._errors = deque(maxlen=t.confidence_window)
        self.last_plan: Optional[ControlPlan] = None

    # ── Model ────────────────────────────────────────────────

    def _inputs(self, temp, actions, temp_prev, actions_prev) -> list:
        sp = self.setpoint
        return [
            (temp - sp) / 10.0,
            1.0 if actions[0] else 0.0,
            1.0 if actions[1] else 0.0,
            (temp_prev - sp) / 10.0,
            1.0 if actions_prev[0] else 0.0,
            1.0 if actions_prev[1] else 0.0,
        ]

    def predict_delta(self, temp, actions, temp_prev, actions_prev) -> float:
        inputs = self._inputs(temp, actions, temp_prev, actions_prev)
        return self.model.predict(inputs) * self.tuning.output_scale

    def _learn(self, temperature: float):
        """Fit the model to the delta observed since the last applied decision."""
        inputs = self._prev_inputs
        if inputs is None or self._prev_temp is None:
            return
        t = self.tuning
        actual = temperature - self._prev_temp
        predicted = self.model.predict(inputs) * t.output_scale
        miss = abs(predicted - actual)

        if miss < t.accurate_error:
            self.learning_rate *= t.lr_decay
        else:
            self.learning_rate = min(t.max_learning_rate, self.learning_rate * t.lr_growth)

        if hasattr(self.model, "train"):
            if hasattr(self.model, "learning_rate"):
                self.model.learning_rate = self.learning_rate
            self.model.train(inputs, actual / t.output_scale)

        self._predictions += 1
        self._accuracy.append(miss < t.confidence_band)
        self._errors.append(miss)

    @property
    def model_confidence(self) -> float:
        if not self._accuracy:
            return 0.5
        return sum(self._accuracy) / len(self._accuracy)

    # ── Planning ─────────────────────────────────────────────

    def simulate(self, temperature: float, sequence) -> list:
        """Roll a sequence of (p1, p2) actions through the model."""
        t = self.tuning
        trajectory = [temperature]
        temp = temp_prev = temperature
        actions_prev = self._last_applied
        for actions in sequence:
            delta = self.predict_delta(temp, actions, temp_prev, actions_prev)
            temp_prev = temp
            temp += delta
            if actions[0] or actions[1]:
                temp -= t.cooling_bias * t.step_dt
            else:
                temp += t.ambient_bias * t.step_dt
            trajectory.append(temp)
            actions_prev = actions
        return trajectory

    def cost(self, trajectory: list, sequence) -> float:
        t = self.tuning
        total = sum((temp - self.setpoint) ** 2 for temp in trajectory[1:])
        for p1, p2 in sequence:
            if p1:
                total += t.effort_p1
            if p2:
                total += t.effort_p2
        return total

    def sample_sequence(self, temperature: float) -> tuple:
        error = temperature - self.setpoint
        p1_prob = max(0.1, min(0.9, 0.5 + error * 0.1))
        p2_prob = max(0.0, min(0.8, error * 0.1))
        return tuple(
            (self.rng.random() < p1_prob, self.rng.random() < p2_prob)
            for _ in range(self.tuning.control_horizon)
        )

    def optimize_control(self, temperature: float) -> ControlPlan:
        """Sample candidate sequences and return the cheapest."""
        candidates = []
        best = None
        for _ in range(self.tuning.num_sequences):
            sequence = self.sample_sequence(temperature)
            trajectory = self.simulate(temperature, sequence)
            cost = self.cost(trajectory, sequence)
            candidates.append((sequence, cost))
            if best is None or cost < best.cost:
                best = ControlPlan(sequence=sequence, cost=cost, trajectory=trajectory)
        best.candidates = candidates
        return best

    # ── Contract ─────────────────────────────────────────────

    def _compute(self, temperature: float, now: float, dt: float) -> ControlOutput:
        self._learn(temperature)

        self._prev_prev_temp = self._prev_temp
        self._prev_temp = temperature

        plan = self.optimize_control(temperature)
        self.last_plan = plan
        p1, p2 = plan.first_action

        temp_prev = self._prev_prev_temp if self._prev_prev_temp is not None else temperature
        self._pending_inputs = (temperature, temp_prev, self._last_applied)
        # Until the loop reports what was applied, assume the plan went through
        self._record_applied((p1, p2))

        error = temperature - self.setpoint
        return ControlOutput(
            intents=self._intents({1: p1, 2: p2}),
            diagnostics={
                "strategy": self.kind.value,
                "temperature": temperature,
                "setpoint": self.setpoint,
                "error": error,
                "predicted_trajectory": plan.trajectory,
                "plan_cost": plan.cost,
                "model_confidence": self.model_confidence,
                "learning_rate": self.learning_rate,
                "control_horizon": self.tuning.control_horizon,
                "stable": abs(error) < 0.5,
            },
        )

    def _record_applied(self, applied: tuple):
        if self._pending_inputs is None:
            return
        temperature, temp_prev, actions_prev = self._pending_inputs
        self._prev_inputs = self._inputs(temperature, applied, temp_prev, actions_prev)
        self._last_applied = applied

    def notify_applied(self, states: dict):
        ids = self.actuator_ids
        applied = (bool(states.get(ids[0], False)), bool(states.get(ids[1], False)))
        self._record_applied(applied)

    def _metrics(self) -> dict:
        recent = list(self._errors)[-10:]
        return {
            "model_confidence": self.model_confidence,
            "avg_prediction_error": sum(recent) / len(recent) if recent else 0.0,
            "learning_rate": self.learning_rate,
            "total_predictions": self._predictions,
        }
