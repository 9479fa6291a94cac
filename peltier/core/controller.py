"""
Thermal Controller: Main Scan Loop
===================================
Orchestrates the container cooler. Each scan cycle:

    1. Apply queued operator commands (in arrival order)
    2. Maintain the PLC link (reconnect with exponential backoff)
    3. Read the thermocouple (synthetic feed after repeated failures)
    4. Run the active strategy (automatic mode) through the governor
    5. Write any actuator whose governed state differs from the
       last state written successfully (deferred to a later scan
       once a request in this scan has timed out)
    6. Notify observers

The scan thread is the only writer of strategy and governor state.
Operator commands from other threads are queued and applied at the
start of the next scan.

The loop runs on fixed logical ticks; a scan that overruns its tick
skips ahead to the next tick boundary instead of queueing late scans.
"""

import logging
import queue
import threading
import time
from collections import deque
from typing import Optional

from peltier.config.io_map import IOMap
from peltier.config.setpoints import Setpoints
from peltier.core.errors import (
    CommandRejected,
    ConnectionStateError,
    ControlError,
    PeltierError,
    RequestTimeout,
    TransportError,
)
from peltier.core.events import EventBus
from peltier.core.governor import ActuationGovernor
from peltier.core.models import TemperatureReading
from peltier.drivers.plc_driver import PLCDriver
from peltier.drivers.simulator import ContainerThermalModel, SyntheticTemperatureFeed
from peltier.drivers.transport import TcpTransport
from peltier.strategies.base import ControlStrategy, StrategyKind, create_strategy

logger = logging.getLogger(__name__)


def _timed_out(exc: PeltierError) -> bool:
    """True if `exc`, or any cause it carries, is a request timeout."""
    if isinstance(exc, RequestTimeout):
        return True
    return any(isinstance(c, RequestTimeout) for c in getattr(exc, "causes", ()))


class ThermalController:
    """
    Main controller for the Peltier container cooler.

    `transport` defaults to a raw-socket TcpTransport; tests inject an
    in-process fake. `clock` supplies the monotonic time used for
    dwell and strategy timing.
    """

    def __init__(
        self,
        setpoints: Optional[Setpoints] = None,
        io_map: Optional[IOMap] = None,
        transport=None,
        synthetic_feed: Optional[SyntheticTemperatureFeed] = None,
        clock=time.monotonic,
    ):
        self.sp = setpoints or Setpoints()
        self.io_map = io_map or IOMap()
        self._clock = clock

        # Core components
        self.transport = transport or TcpTransport(
            timeout=self.sp.request_timeout_sec,
            connect_timeout=self.sp.connect_timeout_sec,
        )
        self.driver = PLCDriver(self.transport, self.io_map, unit_id=self.sp.plc_unit_id)
        self.governor = ActuationGovernor(
            self.io_map.actuator_ids,
            min_on_time=self.sp.min_on_time_sec,
            min_off_time=self.sp.min_off_time_sec,
        )
        self.events = EventBus()
        self.synthetic = synthetic_feed or SyntheticTemperatureFeed(
            ContainerThermalModel(
                initial_temp=self.sp.ambient_temp_c,
                ambient_temp=self.sp.ambient_temp_c,
            )
        )

        # Control state
        self.target_temp = self.sp.target_temp_c
        self.automatic = False
        self._requested_automatic = False
        self.active_kind = StrategyKind.parse(self.sp.control_strategy)
        self._strategies = {}
        self._manual = {aid: False for aid in self.io_map.actuator_ids}
        self._commands = queue.SimpleQueue()

        # Link state
        self._link_lock = threading.Lock()
        self._link_requested = False
        self._link = (self.sp.plc_host, self.sp.plc_port, self.sp.connect_timeout_sec)
        self._backoff = self.sp.reconnect_backoff_sec
        self._next_reconnect_at = 0.0
        self._was_connected = False
        self._stalled = False

        # Temperature source
        self.current_reading: Optional[TemperatureReading] = None
        self.using_synthetic = False
        self._consecutive_failures = 0
        self._history = deque(maxlen=self.sp.history_size)

        # Output image
        self._written = {aid: None for aid in self.io_map.actuator_ids}
        self._write_errors = {}
        self.last_write_error: Optional[str] = None

        # Performance tracking
        self._decisions = deque(maxlen=self.sp.performance_window)
        self._per_strategy = {}

        # Runtime state
        self._running = False
        self._scan_count = 0
        self._scan_time_ms = 0.0
        self._max_scan_time_ms = 0.0
        self._overruns = 0
        self._thread: Optional[threading.Thread] = None

        if self.sp.automatic_mode:
            self._set_automatic(True)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def scan_count(self) -> int:
        return self._scan_count

    @property
    def is_connected(self) -> bool:
        return self.transport.is_connected

    @property
    def strategy(self) -> ControlStrategy:
        return self._strategy_for(self.active_kind)

    def _strategy_for(self, kind: StrategyKind) -> ControlStrategy:
        strategy = self._strategies.get(kind)
        if strategy is None:
            strategy = create_strategy(
                kind,
                actuator_ids=self.io_map.actuator_ids,
                min_valid_temp=self.sp.min_valid_temp_c,
                max_valid_temp=self.sp.max_valid_temp_c,
            )
            strategy.configure(self.target_temp, self.sp.tuning_for(kind.value))
            self._strategies[kind] = strategy
        return strategy

    # ── Scan Loop ────────────────────────────────────────────

    def start(self, blocking: bool = True):
        """Start the scan loop."""
        self._running = True
        logger.info(
            "Thermal controller starting (poll interval: %d ms, strategy: %s)",
            self.sp.poll_interval_ms, self.active_kind.value,
        )
        if blocking:
            self._scan_loop()
        else:
            self._thread = threading.Thread(
                target=self._scan_loop, name="scan-loop", daemon=True
            )
            self._thread.start()

    def stop(self):
        """Stop the scan loop and switch every Peltier off."""
        logger.info("Thermal controller stopping...")
        self._running = False
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=5.0)
        self._thread = None
        self._safe_state()
        logger.info("Thermal controller stopped. Total scans: %d", self._scan_count)

    def single_scan(self):
        """Execute exactly one scan cycle (for testing)."""
        self._execute_scan()

    def _scan_loop(self):
        """Main deterministic scan loop."""
        cycle_sec = self.sp.poll_interval_ms / 1000.0
        next_tick = time.monotonic()

        while self._running:
            t_start = time.monotonic()

            try:
                self._execute_scan()
            except Exception:
                logger.exception("Scan cycle exception")

            t_end = time.monotonic()
            self._scan_time_ms = (t_end - t_start) * 1000.0
            self._max_scan_time_ms = max(self._max_scan_time_ms, self._scan_time_ms)

            next_tick += cycle_sec
            if t_end > next_tick:
                skipped = int((t_end - next_tick) // cycle_sec) + 1
                next_tick += skipped * cycle_sec
                self._overruns += 1
                logger.warning(
                    "Scan overrun: %.1f ms (target: %d ms), skipping %d tick(s)",
                    self._scan_time_ms, self.sp.poll_interval_ms, skipped,
                )
            time.sleep(max(0.0, next_tick - time.monotonic()))

    def _execute_scan(self):
        """One complete scan cycle."""
        now = self._clock()
        self._scan_count += 1
        self._stalled = False

        # Phase 1: Operator commands
        self._apply_commands(now)

        # Phase 2: Link maintenance
        self._maintain_link(now)

        # Phase 3: Temperature
        reading = self._read_temperature(now)
        if reading is not None:
            self.current_reading = reading
            self._history.append(reading)
            self.events.publish("on_temperature_update", reading)

        # Phase 4: Control decision
        diagnostics = None
        if reading is not None and self.automatic:
            diagnostics = self._run_strategy(reading, now)
        elif not self.automatic:
            for aid, on in self._manual.items():
                self.governor.propose(aid, on, now)

        # Phase 5: Outputs
        changed = self._write_outputs()

        # Phase 6: Notifications
        for aid, on in changed:
            self.events.publish("on_actuator_state_changed", aid, on)
        if diagnostics is not None:
            diagnostics["write_errors"] = dict(self._write_errors)
            self.events.publish("on_control_decision", diagnostics)

    # ── Phase Handlers ───────────────────────────────────────

    def _apply_commands(self, now: float):
        while True:
            try:
                command, args = self._commands.get_nowait()
            except queue.Empty:
                return
            handler = getattr(self, f"_do_{command}")
            try:
                handler(now, *args)
            except PeltierError as exc:
                logger.warning("Command %s%r rejected: %s", command, args, exc)

    def _maintain_link(self, now: float):
        connected = self.transport.is_connected
        if not connected and self._link_requested and now >= self._next_reconnect_at:
            host, port, timeout = self._link
            try:
                with self._link_lock:
                    self.transport.connect(host, port, timeout)
            except (TransportError, ConnectionStateError) as exc:
                self._next_reconnect_at = now + self._backoff
                logger.warning(
                    "Reconnect to %s:%d failed: %s (retry in %.0f s)",
                    host, port, exc, self._backoff,
                )
                self._backoff = min(self._backoff * 2, self.sp.reconnect_backoff_max_sec)
            else:
                self._backoff = self.sp.reconnect_backoff_sec
                if not self.driver.probe():
                    # No further requests on an unanswered link this scan
                    self._stalled = True
            connected = self.transport.is_connected

        if connected != self._was_connected:
            self._was_connected = connected
            if connected:
                # Re-assert every output on a fresh link
                self._written = {aid: None for aid in self._written}
            self._publish_connection()

    def _read_temperature(self, now: float) -> Optional[TemperatureReading]:
        if self.transport.is_connected and not self._stalled:
            try:
                reading = self.driver.read_temperature()
            except PeltierError as exc:
                self._consecutive_failures += 1
                if _timed_out(exc):
                    self._stalled = True
                logger.warning(
                    "Temperature read failed (%d in a row): %s",
                    self._consecutive_failures, exc,
                )
            else:
                self._consecutive_failures = 0
                if self.using_synthetic:
                    logger.info("PLC temperature restored, leaving synthetic feed")
                    self.using_synthetic = False
                    self.synthetic.deactivate()
                    self._publish_connection()
                return reading
        else:
            self._consecutive_failures += 1

        if (self.sp.synthetic_enabled and not self.using_synthetic
                and self._consecutive_failures >= self.sp.synthetic_after_failures):
            self.using_synthetic = True
            self.synthetic.activate(self.current_reading, now)
            self._publish_connection()

        if self.using_synthetic:
            self.synthetic.set_actuators(
                {aid: st.is_on for aid, st in self.governor.states().items()}
            )
            return self.synthetic.read(now)
        return None

    def _run_strategy(self, reading: TemperatureReading, now: float) -> Optional[dict]:
        strategy = self.strategy
        try:
            output = strategy.update(reading.value, now)
        except ControlError as exc:
            logger.warning("Control error, holding actuator states: %s", exc)
            return {
                "strategy": strategy.kind.value,
                "temperature": reading.value,
                "setpoint": self.target_temp,
                "control_error": str(exc),
                "applied": self._governed_states(),
            }
        if output is None:
            return None

        applied = {}
        for intent in output.intents:
            applied[intent.actuator_id] = self.governor.propose(
                intent.actuator_id, intent.desired_on, now
            )
        strategy.notify_applied(applied)
        self._record_decision(strategy.kind, reading)

        diagnostics = dict(output.diagnostics)
        diagnostics["source"] = reading.source.value
        diagnostics["intents"] = {
            i.actuator_id: {"desired_on": i.desired_on, "duty_cycle": i.duty_cycle}
            for i in output.intents
        }
        diagnostics["applied"] = applied
        return diagnostics

    def _write_outputs(self) -> list:
        """Write changed actuators; returns [(actuator_id, is_on)] applied."""
        changed = []
        for aid in self.io_map.actuator_ids:
            desired = self.governor.is_on(aid)
            if self._written.get(aid) == desired:
                continue
            if not self.transport.is_connected:
                self._write_errors[aid] = "not connected"
                continue
            if self._stalled:
                self._write_errors[aid] = "deferred: PLC not responding"
                continue
            try:
                method = self.driver.set_actuator(aid, desired)
            except PeltierError as exc:
                if _timed_out(exc):
                    self._stalled = True
                self._write_errors[aid] = str(exc)
                self.last_write_error = f"Actuator {aid}: {exc}"
                logger.error("Actuator %d write failed: %s", aid, exc)
                continue
            logger.info(
                "Actuator %d -> %s (via %s)", aid, "ON" if desired else "OFF", method
            )
            self._written[aid] = desired
            self._write_errors.pop(aid, None)
            changed.append((aid, desired))
        return changed

    def _safe_state(self):
        """Force every Peltier off, bypassing dwell."""
        self.governor.force_off(self._clock())
        for aid in self._manual:
            self._manual[aid] = False
        if not self.transport.is_connected:
            return
        for aid in self.io_map.actuator_ids:
            try:
                self.driver.set_actuator(aid, False)
                self._written[aid] = False
            except PeltierError:
                logger.exception("Failed to switch actuator %d off", aid)

    def _publish_connection(self):
        self.events.publish(
            "on_connection_status_changed",
            self.transport.is_connected, self.using_synthetic,
        )

    def _governed_states(self) -> dict:
        return {aid: st.is_on for aid, st in self.governor.states().items()}

    def _record_decision(self, kind: StrategyKind, reading: TemperatureReading):
        error = abs(reading.value - self.target_temp)
        self._decisions.append((kind.value, error))
        stats = self._per_strategy.setdefault(kind.value, {"samples": 0, "total_error": 0.0})
        stats["samples"] += 1
        stats["total_error"] += error

    # ── Command Handlers (scan thread) ───────────────────────

    def _do_target(self, now: float, celsius: float):
        self.target_temp = celsius
        self.sp.target_temp_c = celsius
        for kind, strategy in self._strategies.items():
            strategy.configure(celsius, self.sp.tuning_for(kind.value))
        logger.info("Target temperature set to %.1f °C", celsius)

    def _do_automatic(self, now: float, enabled: bool):
        self._set_automatic(enabled)

    def _set_automatic(self, enabled: bool):
        self._requested_automatic = enabled
        if enabled == self.automatic:
            return
        self.automatic = enabled
        if enabled:
            self.strategy.configure(self.target_temp, self.sp.tuning_for(self.active_kind.value))
        else:
            self.strategy.reset()
            self._manual = self._governed_states()
        logger.info("Automatic mode %s", "enabled" if enabled else "disabled")

    def _do_strategy(self, now: float, kind: StrategyKind):
        self.active_kind = kind
        self.sp.control_strategy = kind.value
        self._strategy_for(kind).configure(self.target_temp, self.sp.tuning_for(kind.value))
        logger.info("Control strategy set to %s", kind.value)

    def _do_manual(self, now: float, actuator_id: int, on: bool):
        if self.automatic:
            raise CommandRejected("Manual actuator command while automatic mode is enabled")
        self._manual[actuator_id] = on
        allowed = self.governor.propose(actuator_id, on, now)
        if allowed != on:
            logger.info(
                "Actuator %d manual %s held by dwell time", actuator_id, "ON" if on else "OFF"
            )

    # ── Collaborator Interface ───────────────────────────────

    def connect(self, host: str, port: int = 502, unit_id: int = 1, timeout_ms: int = 3000) -> bool:
        """
        Connect to the PLC. The link is kept and retried until disconnect().

        `timeout_ms` bounds each request; the TCP handshake uses
        `connect_timeout_sec` from the setpoints.
        """
        handshake = self.sp.connect_timeout_sec
        self._link = (host, port, handshake)
        self._link_requested = True
        self.driver.unit_id = unit_id
        self.transport.timeout = timeout_ms / 1000.0
        self._backoff = self.sp.reconnect_backoff_sec
        try:
            with self._link_lock:
                self.transport.connect(host, port, handshake)
        except (TransportError, ConnectionStateError) as exc:
            logger.error("Connect to %s:%d failed: %s", host, port, exc)
            self._next_reconnect_at = self._clock() + self._backoff
            return False
        self._next_reconnect_at = 0.0
        self.driver.probe()
        return True

    def disconnect(self):
        self._link_requested = False
        with self._link_lock:
            self.transport.disconnect()

    def subscribe(self, observer):
        self.events.subscribe(observer)

    def unsubscribe(self, observer):
        self.events.unsubscribe(observer)

    def set_target_temperature(self, celsius: float):
        celsius = float(celsius)
        if not self.sp.min_valid_temp_c <= celsius <= self.sp.max_valid_temp_c:
            raise ValueError(f"Target {celsius} °C outside the valid range")
        self._commands.put(("target", (celsius,)))

    def set_automatic_mode(self, enabled: bool):
        enabled = bool(enabled)
        self._requested_automatic = enabled
        self._commands.put(("automatic", (enabled,)))

    def set_actuator_manual(self, actuator_id: int, on: bool):
        # Checked against the most recently requested mode, so queued
        # mode changes and manual commands are judged in call order
        if self._requested_automatic:
            raise CommandRejected("Disable automatic mode before commanding actuators")
        self.io_map.actuator(actuator_id)
        self._commands.put(("manual", (actuator_id, bool(on))))

    def select_control_strategy(self, kind):
        self._commands.put(("strategy", (StrategyKind.parse(kind),)))

    def update_setpoint(self, key: str, value) -> bool:
        """Typed update of a runtime setpoint (console `set`)."""
        if key == "target_temp_c":
            self.set_target_temperature(value)
            return True
        if key == "control_strategy":
            self.select_control_strategy(value)
            return True
        if key == "automatic_mode":
            if not self.sp.update(key, value):
                return False
            self.set_automatic_mode(self.sp.automatic_mode)
            return True
        if not self.sp.update(key, value):
            return False
        if key in ("min_on_time_sec", "min_off_time_sec"):
            for st in self.governor.states().values():
                st.min_on_time = self.sp.min_on_time_sec
                st.min_off_time = self.sp.min_off_time_sec
        return True

    # ── Status ───────────────────────────────────────────────

    def get_status(self) -> dict:
        """Return comprehensive status snapshot."""
        reading = self.current_reading
        deviation = abs(reading.value - self.target_temp) if reading else None
        connected = self.transport.is_connected
        return {
            "connected": connected,
            "using_synthetic": self.using_synthetic,
            "temperature_c": reading.value if reading else None,
            "temperature_source": reading.source.value if reading else None,
            "read_method": reading.method if reading else None,
            "target_temp_c": self.target_temp,
            "automatic_mode": self.automatic,
            "strategy": self.active_kind.value,
            "actuators": self._governed_states(),
            "written": dict(self._written),
            "write_errors": dict(self._write_errors),
            "last_write_error": self.last_write_error,
            "consecutive_read_failures": self._consecutive_failures,
            "scan_count": self._scan_count,
            "scan_time_ms": round(self._scan_time_ms, 1),
            "max_scan_time_ms": round(self._max_scan_time_ms, 1),
            "overruns": self._overruns,
            "in_target": deviation is not None and deviation <= self.sp.temp_tolerance_c,
            "needs_attention": (
                not connected
                or (deviation is not None and deviation > self.sp.temp_alert_deviation_c)
            ),
        }

    def get_history(self) -> list:
        return list(self._history)

    def get_performance_stats(self) -> dict:
        """Error statistics over the most recent decisions."""
        errors = [err for _, err in self._decisions]
        per_strategy = {
            kind: {
                "samples": stats["samples"],
                "mean_error": stats["total_error"] / stats["samples"],
            }
            for kind, stats in self._per_strategy.items() if stats["samples"]
        }
        if not errors:
            return {"samples": 0, "per_strategy": per_strategy}
        stable = sum(1 for err in errors if err <= self.sp.temp_tolerance_c)
        return {
            "samples": len(errors),
            "mean_error": sum(errors) / len(errors),
            "max_error": max(errors),
            "min_error": min(errors),
            "stability_rate": stable / len(errors),
            "per_strategy": per_strategy,
        }

    def strategy_metrics(self) -> dict:
        return self.strategy.metrics()
