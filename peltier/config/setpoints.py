"""
Runtime Setpoints for the Container Cooler
============================================
All tunable process parameters. These can be adjusted from the
operator console at runtime and loaded from a JSON file at startup.

Controller tuning constants (PID gains, PWM period, RBF and MPC
learning parameters) live with each strategy; `strategy_tuning`
holds per-strategy overrides keyed by strategy kind.
"""

from dataclasses import dataclass, field
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Setpoints:
    """Tunable runtime setpoints for the container cooler."""

    # ── PLC Connection ───────────────────────────────────────
    # GMT PLC on the plant network
    plc_host: str = "10.5.5.95"
    plc_port: int = 502
    plc_unit_id: int = 1
    connect_timeout_sec: float = 5.0    # Socket handshake timeout
    request_timeout_sec: float = 3.0    # Per-request response timeout
    reconnect_backoff_sec: float = 1.0  # First reconnect delay
    reconnect_backoff_max_sec: float = 30.0  # Reconnect delay ceiling

    # ── Polling ──────────────────────────────────────────────
    poll_interval_ms: int = 1000        # Control loop scan period

    # ── Temperature ──────────────────────────────────────────
    target_temp_c: float = 5.0          # Container target
    temp_tolerance_c: float = 0.5       # ±band counted as "in target"
    temp_alert_deviation_c: float = 2.0  # Deviation that needs attention
    min_valid_temp_c: float = -50.0     # Readings outside are rejected
    max_valid_temp_c: float = 150.0

    # ── Peltier Protection ───────────────────────────────────
    # Relay + Peltier element cycling limits
    min_on_time_sec: float = 5.0        # Minimum time ON before switching OFF
    min_off_time_sec: float = 3.0       # Minimum time OFF before switching ON

    # ── Temperature Source ───────────────────────────────────
    synthetic_enabled: bool = True      # Fall back to the simulated feed
    synthetic_after_failures: int = 3   # Consecutive failed reads before fallback
    ambient_temp_c: float = 22.0        # Ambient used by the simulated feed

    # ── Control ──────────────────────────────────────────────
    control_strategy: str = "pid-cascade"
    automatic_mode: bool = False        # Start with automatic control enabled
    history_size: int = 100             # Readings kept for trend display
    performance_window: int = 20        # Decisions used for performance stats

    # Per-strategy tuning overrides: {"pid-cascade": {"kp": 2.5}, ...}
    strategy_tuning: dict = field(default_factory=dict)

    @classmethod
    def load(cls, path: str) -> "Setpoints":
        """Load setpoints from JSON, falling back to defaults."""
        filepath = Path(path)
        sp = cls()
        if not filepath.exists():
            logger.warning("Setpoints file %s not found, using defaults", filepath)
            return sp
        data = json.loads(filepath.read_text())
        for key, value in data.items():
            if not sp.update(key, value):
                logger.warning("Ignoring setpoint %s=%r from %s", key, value, filepath)
        return sp

    def update(self, key: str, value) -> bool:
        """Update a single setpoint, returning True on success."""
        if key.startswith("_") or key not in self.as_dict():
            return False
        expected_type = type(getattr(self, key))
        try:
            if expected_type is bool and isinstance(value, str):
                value = value.strip().lower() in ("1", "true", "yes", "on")
            setattr(self, key, expected_type(value))
            return True
        except (ValueError, TypeError):
            return False

    def tuning_for(self, kind: str) -> dict:
        """Tuning overrides for one strategy kind."""
        return dict(self.strategy_tuning.get(kind, {}))

    def as_dict(self) -> dict:
        """Return all setpoints as a flat dictionary."""
        return {
            k: v for k, v in self.__dict__.items()
            if not k.startswith("_")
        }
