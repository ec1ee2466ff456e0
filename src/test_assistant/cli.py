"""Command-line interface for Test Assistant."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from . import DEFAULT_BOOT_PORT, DEFAULT_LOG_DIR, DEFAULT_MAIN_PORT, SERIAL_BAUD_RATE, TICK_INTERVAL_S
from .bench import TestBench, replay
from .exceptions import ScriptError, TestAssistantError
from .router import LineRouter
from .script_loader import load_profile
from .sequencer import RunStatus, TestPointOutcome, TestRun
from .serial_link import DualChannelTransport, list_available_ports


def print_outcome(outcome: TestPointOutcome) -> None:
    """Result sink that prints one line per test point."""
    print(
        f"[{outcome.verdict}] {outcome.test_name} #{outcome.attempt_number}: "
        f"expected {outcome.expected_output!r}, got {outcome.actual_output!r}"
    )


def _print_summary(run: TestRun) -> int:
    print(f"{run.name}: {run.status.value}")
    if run.failure_message:
        print(f"  Cause: {run.failure_message}")
    if run.status is RunStatus.IN_PROGRESS:
        print(f"  Stopped at step {run.instructions.current_index}: {run.current.text}")
    if run.mismatch_count:
        print(f"  Mismatches: {run.mismatch_count}")
    return 0 if run.status is RunStatus.COMPLETED else 1


def _read_lines(path: Optional[str]) -> List[str]:
    if path is None:
        return []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        return f.read().splitlines()


def command_run(args) -> int:
    """Run a test script against the board."""
    try:
        profile = load_profile(args.script)
    except ScriptError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        transport = DualChannelTransport(
            LineRouter(),
            main_port=args.main_port,
            boot_port=args.boot_port,
            baud_rate=args.baud_rate,
        )
        with TestBench(
            profile,
            transport,
            result_sink=print_outcome,
            log_dir=args.log_dir,
            interval_s=args.interval,
        ) as bench:
            bench.run(timeout_s=args.timeout)
            return _print_summary(bench.test_run)

    except TestAssistantError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def command_replay(args) -> int:
    """Replay captured terminal logs through a test script."""
    try:
        profile = load_profile(args.script)
        main_lines = _read_lines(args.main_log)
        boot_lines = _read_lines(args.boot_log)
    except ScriptError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except OSError as e:
        print(f"Error: cannot read log: {e}", file=sys.stderr)
        return 2

    run = replay(profile, main_lines, boot_lines, result_sink=print_outcome)
    return _print_summary(run)


def command_serial_list(args) -> int:
    """List available serial ports."""
    ports = list_available_ports()
    if not ports:
        print("No serial ports found.")
    else:
        print("Available serial ports:")
        for p in ports:
            print(f"  {p}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="test-assistant",
        description="Test Assistant - scripted acceptance tests over the MAIN and BOOT consoles",
    )
    parser.add_argument(
        "-v", "--verbose", action="count", default=0,
        help="Log to stderr (-v for INFO, -vv for DEBUG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Run a script on hardware
    run_parser = subparsers.add_parser("run", help="Run a test script against the board")
    run_parser.add_argument("script", help="Path to the JSON test script")
    run_parser.add_argument(
        "--main-port", type=str, default=DEFAULT_MAIN_PORT,
        help=f"MAIN console serial port (default: {DEFAULT_MAIN_PORT})",
    )
    run_parser.add_argument(
        "--boot-port", type=str, default=DEFAULT_BOOT_PORT,
        help=f"BOOT console serial port (default: {DEFAULT_BOOT_PORT})",
    )
    run_parser.add_argument(
        "--baud-rate", type=int, default=SERIAL_BAUD_RATE,
        help=f"Baud rate for both consoles (default: {SERIAL_BAUD_RATE})",
    )
    run_parser.add_argument(
        "--interval", type=float, default=TICK_INTERVAL_S,
        help=f"Seconds between evaluations (default: {TICK_INTERVAL_S})",
    )
    run_parser.add_argument(
        "--timeout", type=float, default=None,
        help="Give up after this many seconds (default: no limit)",
    )
    run_parser.add_argument(
        "--log-dir", type=str, default=DEFAULT_LOG_DIR,
        help=f"Where terminal logs are saved (default: {DEFAULT_LOG_DIR})",
    )
    run_parser.set_defaults(func=command_run)

    # Replay captured logs
    replay_parser = subparsers.add_parser(
        "replay", help="Feed captured terminal logs through a test script offline",
    )
    replay_parser.add_argument("script", help="Path to the JSON test script")
    replay_parser.add_argument("--main-log", type=str, default=None, help="Captured MAIN console log")
    replay_parser.add_argument("--boot-log", type=str, default=None, help="Captured BOOT console log")
    replay_parser.set_defaults(func=command_replay)

    # Serial list
    serial_list_parser = subparsers.add_parser(
        "serial-list", help="List available serial ports",
    )
    serial_list_parser.set_defaults(func=command_serial_list)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG if args.verbose > 1 else logging.INFO,
            format="%(asctime)s [%(levelname)-7s] %(name)s: %(message)s",
        )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
