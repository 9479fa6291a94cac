"""
Peltier Actuation Governor
===========================
Protects the Peltier elements and their relays from short-cycling.

Every desired state, whether from a strategy or an operator,
passes through `propose()`. A change is let through only when the
actuator has dwelt long enough in its current state:

  - ON  -> OFF needs `min_on_time` since the last switch
  - OFF -> ON  needs `min_off_time` since the last switch

An actuator that has never switched may change immediately.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class ActuatorDwellState:
    """Dwell record for one actuator. Mutated only on an allowed switch."""
    actuator_id: int
    is_on: bool = False
    last_transition_at: Optional[float] = None
    min_on_time: float = 5.0
    min_off_time: float = 3.0
    transitions: int = 0
    blocked: int = 0

    def dwell_remaining(self, now: float) -> float:
        if self.last_transition_at is None:
            return 0.0
        required = self.min_on_time if self.is_on else self.min_off_time
        return max(0.0, required - (now - self.last_transition_at))

    def as_dict(self) -> dict:
        return {
            "actuator_id": self.actuator_id,
            "is_on": self.is_on,
            "last_transition_at": self.last_transition_at,
            "min_on_time": self.min_on_time,
            "min_off_time": self.min_off_time,
            "transitions": self.transitions,
            "blocked": self.blocked,
        }


class ActuationGovernor:
    """
    Enforces minimum on/off dwell times per actuator.

    Strategy-agnostic: it sees only (actuator, desired state, time).
    Not thread-safe; the scan thread is its only caller.
    """

    def __init__(self, actuator_ids, min_on_time: float = 5.0, min_off_time: float = 3.0):
        if min_on_time < 0 or min_off_time < 0:
            raise ValueError("Dwell times must be non-negative")
        self.min_on_time = min_on_time
        self.min_off_time = min_off_time
        self._states = {
            aid: ActuatorDwellState(
                actuator_id=aid, min_on_time=min_on_time, min_off_time=min_off_time,
            )
            for aid in actuator_ids
        }

    def propose(self, actuator_id: int, desired_on: bool, now: float) -> bool:
        """Return the state the actuator should be in after this proposal."""
        state = self.state(actuator_id)
        if desired_on == state.is_on:
            return state.is_on

        remaining = state.dwell_remaining(now)
        if remaining > 0:
            state.blocked += 1
            logger.debug(
                "Actuator %d held %s for %.1f s more",
                actuator_id, "ON" if state.is_on else "OFF", remaining,
            )
            return state.is_on

        state.is_on = desired_on
        state.last_transition_at = now
        state.transitions += 1
        logger.debug("Actuator %d -> %s", actuator_id, "ON" if desired_on else "OFF")
        return state.is_on

    def force_off(self, now: float):
        """Record every actuator OFF regardless of dwell (shutdown only)."""
        for state in self._states.values():
            if state.is_on:
                state.is_on = False
                state.last_transition_at = now
                state.transitions += 1

    def state(self, actuator_id: int) -> ActuatorDwellState:
        try:
            return self._states[actuator_id]
        except KeyError:
            raise ValueError(f"Unknown actuator id: {actuator_id}") from None

    def states(self) -> dict:
        return dict(self._states)

    def is_on(self, actuator_id: int) -> bool:
        return self.state(actuator_id).is_on
