"""
Container Cooler CLI Console
=============================
Command-line interface for operator interaction with the thermal
controller. Supports:

  - Status display (temperature, source, Peltier states, link)
  - Connection management
  - Target, mode and strategy selection
  - Manual Peltier commands (manual mode only)
  - Setpoint viewing and modification

Usage:
  python -m console.cli              # Interactive mode, bench PLC
"""

import cmd
import json
import time
import logging

from peltier.core.controller import ThermalController
from peltier.core.errors import CommandRejected

logger = logging.getLogger(__name__)


def _parse_on_off(value: str):
    value = value.strip().lower()
    if value in ("on", "1", "true"):
        return True
    if value in ("off", "0", "false"):
        return False
    return None


class CoolerConsole(cmd.Cmd):
    """Interactive CLI for the Peltier container cooler."""

    intro = (
        "\n"
        "╔══════════════════════════════════════════════════════╗\n"
        "║  Peltier Container Cooler: Control Console          ║\n"
        "║  GMT PLC | GMX-20UA thermocouple | 2x Peltier       ║\n"
        "║  Type 'help' for commands, 'quit' to exit           ║\n"
        "╚══════════════════════════════════════════════════════╝\n"
    )
    prompt = "COOLER> "

    def __init__(self, controller: ThermalController):
        super().__init__()
        self.ctrl = controller

    # ── Status Commands ──────────────────────────────────────

    def do_status(self, arg):
        """Show controller status: status"""
        s = self.ctrl.get_status()
        temp = s["temperature_c"]
        print("\n── Container Cooler Status ───────────────────────")
        print(f"  Link:           {'CONNECTED' if s['connected'] else 'DISCONNECTED'}")
        print(f"  Source:         {'SYNTHETIC' if s['using_synthetic'] else 'PLC'}"
              f"{' (' + s['read_method'] + ')' if s['read_method'] else ''}")
        print(f"  Scan Count:     {s['scan_count']}")
        print(f"  Scan Time:      {s['scan_time_ms']} ms (max: {s['max_scan_time_ms']} ms)")
        print()
        print("── Temperature ──────────────────────────────────")
        print(f"  Container:      {temp:.1f} °C" if temp is not None else "  Container:      --")
        print(f"  Target:         {s['target_temp_c']:.1f} °C")
        print(f"  In Target:      {'YES' if s['in_target'] else 'NO'}")
        print(f"  Attention:      {'NEEDED' if s['needs_attention'] else 'OK'}")
        print()
        print("── Control ──────────────────────────────────────")
        print(f"  Mode:           {'AUTOMATIC' if s['automatic_mode'] else 'MANUAL'}")
        print(f"  Strategy:       {s['strategy']}")
        for aid, on in sorted(s["actuators"].items()):
            err = s["write_errors"].get(aid)
            flag = f" [WRITE FAILED: {err}]" if err else ""
            print(f"  Peltier {aid}:      {'ON' if on else 'OFF'}{flag}")
        print(f"  Read Failures:  {s['consecutive_read_failures']}")
        print()

    def do_history(self, arg):
        """Show recent readings: history [count]"""
        try:
            count = int(arg) if arg.strip() else 10
        except ValueError:
            print("Usage: history [count]")
            return
        readings = self.ctrl.get_history()[-count:]
        if not readings:
            print("\n  No readings yet.\n")
            return
        print("\n── Temperature History ──────────────────────────")
        for r in readings:
            ts = time.strftime("%H:%M:%S", time.localtime(r.timestamp))
            print(f"  {ts}  {r.value:6.1f} °C  {r.source.value:<9s} {r.method}")
        print()

    def do_metrics(self, arg):
        """Show strategy metrics and performance: metrics"""
        print("\n── Strategy Metrics ─────────────────────────────")
        print(json.dumps(self.ctrl.strategy_metrics(), indent=2, default=str))
        print("\n── Performance ──────────────────────────────────")
        print(json.dumps(self.ctrl.get_performance_stats(), indent=2))
        print()

    # ── Connection Commands ──────────────────────────────────

    def do_connect(self, arg):
        """Connect to the PLC: connect [host] [port] [unit_id] [timeout_ms]"""
        sp = self.ctrl.sp
        parts = arg.split()
        try:
            host = parts[0] if len(parts) > 0 else sp.plc_host
            port = int(parts[1]) if len(parts) > 1 else sp.plc_port
            unit_id = int(parts[2]) if len(parts) > 2 else sp.plc_unit_id
            timeout_ms = int(parts[3]) if len(parts) > 3 else int(sp.request_timeout_sec * 1000)
        except ValueError:
            print("Usage: connect [host] [port] [unit_id] [timeout_ms]")
            return
        if self.ctrl.connect(host, port, unit_id, timeout_ms):
            print(f"Connected to {host}:{port}")
        else:
            print(f"Connect to {host}:{port} failed; retrying in the background")

    def do_disconnect(self, arg):
        """Disconnect from the PLC: disconnect"""
        self.ctrl.disconnect()
        print("Disconnected")

    # ── Control Commands ─────────────────────────────────────

    def do_target(self, arg):
        """Set target temperature: target <°C>"""
        try:
            self.ctrl.set_target_temperature(float(arg))
        except ValueError as exc:
            print(f"Invalid target: {exc}" if arg.strip() else "Usage: target <degrees_C>")
            return
        print(f"Target set to {float(arg):.1f} °C")

    def do_auto(self, arg):
        """Enable/disable automatic control: auto [on|off]"""
        enabled = _parse_on_off(arg) if arg.strip() else True
        if enabled is None:
            print("Usage: auto [on|off]")
            return
        self.ctrl.set_automatic_mode(enabled)
        print(f"Automatic mode {'enabled' if enabled else 'disabled'}")

    def do_manual(self, arg):
        """Command a Peltier in manual mode: manual <id> <on|off>"""
        parts = arg.split()
        on = _parse_on_off(parts[1]) if len(parts) == 2 else None
        if on is None:
            print("Usage: manual <id> <on|off>")
            return
        try:
            self.ctrl.set_actuator_manual(int(parts[0]), on)
        except CommandRejected as exc:
            print(f"Rejected: {exc}")
            return
        except ValueError as exc:
            print(f"Invalid actuator: {exc}")
            return
        print(f"Peltier {parts[0]} commanded {'ON' if on else 'OFF'}")

    def do_strategy(self, arg):
        """Select control strategy: strategy <hysteresis|pid-cascade|rbf-adaptive|neural-mpc>"""
        if not arg.strip():
            print(f"Active strategy: {self.ctrl.active_kind.value}")
            return
        try:
            self.ctrl.select_control_strategy(arg.strip())
        except ValueError as exc:
            print(exc)
            return
        print(f"Strategy set to {arg.strip()}")

    # ── Setpoint Commands ────────────────────────────────────

    def do_setpoints(self, arg):
        """Show all setpoints: setpoints [filter]"""
        sp_dict = self.ctrl.sp.as_dict()
        filter_str = arg.strip().lower() if arg else ""

        print("\n── Runtime Setpoints ────────────────────────────")
        for key in sorted(sp_dict.keys()):
            if filter_str and filter_str not in key.lower():
                continue
            val = sp_dict[key]
            print(f"  {key:<35s} = {val}")
        print()

    def do_set(self, arg):
        """Update a setpoint: set <key> <value>"""
        parts = arg.strip().split(None, 1)
        if len(parts) != 2:
            print("Usage: set <key> <value>")
            return

        key, value = parts
        try:
            ok = self.ctrl.update_setpoint(key, value)
        except ValueError as exc:
            print(f"Invalid value for {key}: {exc}")
            return
        if ok:
            print(f"Setpoint {key} updated to {value}")
        else:
            print(f"Invalid setpoint: {key}")

    # ── Utility ──────────────────────────────────────────────

    def do_quit(self, arg):
        """Exit the console: quit"""
        print("Shutting down...")
        return True

    def do_exit(self, arg):
        """Exit the console: exit"""
        return self.do_quit(arg)

    do_EOF = do_quit

    def emptyline(self):
        pass

    def default(self, line):
        print(f"Unknown command: {line}. Type 'help' for available commands.")


def run_cli(controller: ThermalController):
    """Launch the interactive CLI console."""
    console = CoolerConsole(controller)
    try:
        console.cmdloop()
    except KeyboardInterrupt:
        print("\nInterrupted.")


def main():
    """Entry point for standalone CLI usage against the bench PLC."""
    from peltier.drivers.bench_plc import BenchPLC

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    bench = BenchPLC()
    bench.start()
    controller = ThermalController()
    controller.connect(bench.host, bench.port)

    # Start the scan loop in background thread
    controller.start(blocking=False)

    try:
        run_cli(controller)
    finally:
        controller.stop()
        controller.disconnect()
        bench.stop()


if __name__ == "__main__":
    main()
