"""
Peltier Container Cooler: Entry Point
======================================
Launch the thermal controller with the operator console.

Usage:
  python main.py                          # PLC at the configured address + CLI
  python main.py --bench                  # Local bench PLC emulator + CLI
  python main.py --host 10.5.5.95 --auto  # Real PLC, automatic control
  python main.py --headless               # Controller only, no console
"""

import argparse
import logging
import signal
import sys

from peltier.config.io_map import IOMap
from peltier.config.setpoints import Setpoints
from peltier.core.controller import ThermalController
from peltier.strategies.base import StrategyKind

BENCH_HOST = "127.0.0.1"


def parse_args():
    parser = argparse.ArgumentParser(
        description="GMT PLC Peltier Container Temperature Controller"
    )
    parser.add_argument(
        "--host",
        help="PLC address (default: from setpoints)"
    )
    parser.add_argument(
        "--port", type=int,
        help="PLC Modbus/TCP port (default: from setpoints)"
    )
    parser.add_argument(
        "--unit-id", type=int,
        help="Modbus unit id (default: from setpoints)"
    )
    parser.add_argument(
        "--timeout-ms", type=int,
        help="Per-request timeout in milliseconds"
    )
    parser.add_argument(
        "--strategy",
        choices=[k.value for k in StrategyKind],
        help="Control strategy"
    )
    parser.add_argument(
        "--target", type=float,
        help="Target container temperature (°C)"
    )
    parser.add_argument(
        "--auto", action="store_true",
        help="Start in automatic control mode"
    )
    parser.add_argument(
        "--bench", action="store_true",
        help="Start a local bench PLC emulator and connect to it"
    )
    parser.add_argument(
        "--bench-port", type=int, default=5020,
        help="Port for the bench PLC emulator"
    )
    parser.add_argument(
        "--headless", action="store_true",
        help="Run the controller without console (headless mode)"
    )
    parser.add_argument(
        "--setpoints",
        help="Path to setpoints JSON file"
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )
    parser.add_argument(
        "--log-file",
        help="Log to file instead of stderr"
    )
    return parser.parse_args()


def apply_overrides(setpoints: Setpoints, args):
    """Fold command-line options into the loaded setpoints."""
    if args.host:
        setpoints.plc_host = args.host
    if args.port:
        setpoints.plc_port = args.port
    if args.unit_id is not None:
        setpoints.plc_unit_id = args.unit_id
    if args.timeout_ms:
        setpoints.request_timeout_sec = args.timeout_ms / 1000.0
    if args.strategy:
        setpoints.control_strategy = args.strategy
    if args.target is not None:
        setpoints.target_temp_c = args.target
    if args.auto:
        setpoints.automatic_mode = True
    if args.bench:
        setpoints.plc_host = BENCH_HOST
        setpoints.plc_port = args.bench_port


def main():
    args = parse_args()

    # Configure logging
    log_kwargs = {
        "level": getattr(logging, args.log_level),
        "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    }
    if args.log_file:
        log_kwargs["filename"] = args.log_file
    logging.basicConfig(**log_kwargs)

    # Load configuration
    setpoints = Setpoints.load(args.setpoints) if args.setpoints else Setpoints()
    apply_overrides(setpoints, args)
    io_map = IOMap()

    bench = None
    if args.bench:
        from peltier.drivers.bench_plc import BenchPLC
        bench = BenchPLC(host=BENCH_HOST, port=args.bench_port, io_map=io_map)
        bench.start()

    controller = ThermalController(setpoints=setpoints, io_map=io_map)
    if not controller.connect(
        setpoints.plc_host, setpoints.plc_port, setpoints.plc_unit_id,
        int(setpoints.request_timeout_sec * 1000),
    ):
        print(f"PLC at {setpoints.plc_host}:{setpoints.plc_port} not reachable; "
              "retrying in the background")

    def shutdown():
        controller.stop()
        controller.disconnect()
        if bench:
            bench.stop()

    # Handle SIGINT/SIGTERM gracefully
    def signal_handler(sig, frame):
        shutdown()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    # Start the scan loop in background
    controller.start(blocking=False)

    try:
        if args.headless:
            print("Peltier controller running (headless mode). Press Ctrl+C to stop.")
            signal.pause()
        else:
            from console.cli import run_cli
            run_cli(controller)
    finally:
        shutdown()


if __name__ == "__main__":
    main()
