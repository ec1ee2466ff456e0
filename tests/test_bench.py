"""
Bench wiring tests: offline replay of captured consoles, swapped-console
detection and the tick loop.

No hardware is used.  Lines reach the engine either through ``replay()`` or
through ``LineRouter.deliver()`` on the bench's own router.

Run with:
    pytest tests/test_bench.py -v -s
"""

from __future__ import annotations

import os
import sys
from typing import List
from unittest import mock

import pytest

# ---------------------------------------------------------------------------
# Dependency gate
# ---------------------------------------------------------------------------
_MISSING: List[str] = []

try:
    import serial  # noqa: F401
except ImportError:
    _MISSING.append("pyserial")

try:
    from typeguard import typechecked  # noqa: F401
except ImportError:
    _MISSING.append("typeguard")

if _MISSING:
    print(
        "\n"
        "=" * 72 + "\n"
        "  MISSING REQUIRED LIBRARIES\n"
        "=" * 72 + "\n"
        f"  The following packages are not installed: {', '.join(_MISSING)}\n"
        f"  Install them with:  pip install {' '.join(_MISSING)}\n"
        "=" * 72 + "\n",
        file=sys.stderr,
    )
    pytest.skip(
        f"Required libraries missing: {', '.join(_MISSING)}",
        allow_module_level=True,
    )

from test_assistant.bench import TestBench, replay
from test_assistant.instructions import Instruction
from test_assistant.policy import FailureKind
from test_assistant.router import LineRouter
from test_assistant.script_loader import load_profile
from test_assistant.sequencer import InMemoryResultLog, RunStatus, TestProfile
from test_assistant.serial_link import DualChannelTransport
from test_assistant.types import Channel

ADC_SCRIPT = os.path.normpath(
    os.path.join(os.path.dirname(__file__), os.pardir, "scripts", "adc_test.json")
)

BOOT_LOG = [
    "U-Boot SPL 2021.01",
    "SYSFW ABI: 3.1",
    "MMCSD boot",
    "Trying to boot from MMC1",
]

MAIN_LOG = [
    "ADC_Example_main application!",
    "Enter any key...",
    "ADC0 AIN6 voltage: 1225mV",
    "ADC1 AIN5 voltage: 900mV",
]


def _report(label: str, detail: str = "") -> None:
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


def _display_profile() -> TestProfile:
    return TestProfile(
        name="DISPLAY",
        instructions=[
            Instruction("Read the label", check_required=False),
            Instruction("Done", check_required=False),
        ],
    )


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Replay
# ═══════════════════════════════════════════════════════════════════════════

class TestReplay:
    """Captured console output run through the ADC script."""

    def test_good_board_passes(self) -> None:
        _report("TEST", "Replay a passing ADC capture")
        results = InMemoryResultLog()
        run = replay(load_profile(ADC_SCRIPT), MAIN_LOG, BOOT_LOG, result_sink=results)
        assert run.status is RunStatus.COMPLETED
        assert results.verdicts() == ["PASS"] * 7
        assert ("ADC", "ADC0 AIN6 voltage: 1225mV", "ADC0 AIN6 voltage: 1225mV", "PASS", 1) in results.rows()
        _report("PASS", f"{len(results)} test points")

    def test_low_ain6_fails(self) -> None:
        _report("TEST", "AIN6 reads 1200mV")
        main = [line.replace("1225mV", "1200mV") for line in MAIN_LOG]
        run = replay(load_profile(ADC_SCRIPT), main, BOOT_LOG)
        assert run.status is RunStatus.FAILED
        assert run.failure_kind is FailureKind.CHECK_FAILED
        assert run.failure_message.startswith("ADC0 AIN6 out of range")
        assert run.attempt_count == 1
        _report("PASS", run.failure_message)

    def test_wrong_boot_source(self) -> None:
        _report("TEST", "Board boots from QSPI and keeps printing")
        boot = ["QSPI boot"] + [f"noise {i}" for i in range(60)]
        run = replay(load_profile(ADC_SCRIPT), [], boot)
        assert run.status is RunStatus.FAILED
        assert run.failure_kind is FailureKind.LOAD_SOURCE
        _report("PASS", run.failure_message)

    def test_error_marker_on_boot(self) -> None:
        boot = BOOT_LOG[:2] + ["ERROR: Failed to load DDR firmware"]
        run = replay(load_profile(ADC_SCRIPT), [], boot)
        assert run.failure_kind is FailureKind.ERROR_MARKER
        assert "DDR firmware" in run.failure_message

    def test_truncated_capture_stalls(self) -> None:
        run = replay(load_profile(ADC_SCRIPT), MAIN_LOG[:1], BOOT_LOG)
        assert run.status is RunStatus.IN_PROGRESS
        assert run.current.desired_output == "Enter any key..."


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Swapped consoles
# ═══════════════════════════════════════════════════════════════════════════

def _missing_transport() -> DualChannelTransport:
    return DualChannelTransport(
        LineRouter(), main_port="/dev/does-not-exist-1", boot_port="/dev/does-not-exist-2",
    )


class TestSwapDetection:
    """BOOT banner at the top of MAIN means the cables are the wrong way round."""

    def test_swap_detected(self) -> None:
        _report("TEST", "MAIN prints the BOOT banner as its first line")
        transport = _missing_transport()
        bench = TestBench(load_profile(ADC_SCRIPT), transport, log_dir=None)
        with mock.patch.object(transport, "swap_ports") as swap:
            bench.test_run.start()
            bench.router.deliver(Channel.MAIN, b"BOOT processor SYSFW v9\r\n")
            bench.router.process_pending()
        assert bench.swap_detected
        assert bench.test_run.status is RunStatus.RESTARTING
        assert bench.test_run.attempt_count == 0
        swap.assert_called_once_with()
        _report("PASS", bench.test_run.failure_message)

    def test_late_banner_ignored(self) -> None:
        transport = _missing_transport()
        bench = TestBench(load_profile(ADC_SCRIPT), transport, log_dir=None)
        with mock.patch.object(transport, "swap_ports") as swap:
            bench.test_run.start()
            for i in range(6):
                bench.router.deliver(Channel.MAIN, f"line {i}\n".encode())
            bench.router.deliver(Channel.MAIN, b"BOOT processor SYSFW v9\n")
            bench.router.process_pending()
        assert not bench.swap_detected
        assert bench.test_run.status is RunStatus.IN_PROGRESS
        swap.assert_not_called()

    def test_banner_on_boot_is_normal(self) -> None:
        bench = TestBench(load_profile(ADC_SCRIPT), log_dir=None)
        bench.test_run.start()
        bench.router.deliver(Channel.BOOT, b"BOOT processor SYSFW v9\n")
        bench.router.process_pending()
        assert not bench.swap_detected

    def test_detection_disabled(self) -> None:
        bench = TestBench(load_profile(ADC_SCRIPT), log_dir=None, swap_marker=None)
        bench.test_run.start()
        bench.router.deliver(Channel.MAIN, b"BOOT processor SYSFW v9\n")
        bench.router.process_pending()
        assert not bench.swap_detected


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Tick loop
# ═══════════════════════════════════════════════════════════════════════════

class TestTickLoop:
    """``run()`` ticks until the test leaves IN_PROGRESS or time runs out."""

    def test_runs_to_completion(self) -> None:
        with TestBench(_display_profile(), log_dir=None, interval_s=0.01) as bench:
            assert bench.run(timeout_s=5) is RunStatus.COMPLETED
        assert not bench.router.is_running

    def test_timeout_leaves_run_in_progress(self) -> None:
        _report("TEST", "Expected output never arrives, 0.3s timeout")
        profile = TestProfile(
            name="BOOT",
            instructions=[Instruction("Boot", desired_output="MMCSD boot", terminal=Channel.BOOT)],
        )
        with TestBench(profile, log_dir=None, interval_s=0.05) as bench:
            status = bench.run(timeout_s=0.3)
        assert status is RunStatus.IN_PROGRESS
        _report("PASS", "Loop returned at the deadline")

    def test_link_down_fails_after_reconnects(self) -> None:
        _report("TEST", "Devices missing, every reconnect fails")
        profile = TestProfile(
            name="LINK",
            instructions=[Instruction("BOOT connected", check_boot_connected=True)],
        )
        with TestBench(profile, _missing_transport(), log_dir=None, interval_s=0.01) as bench:
            status = bench.run(timeout_s=5)
        assert status is RunStatus.FAILED
        assert bench.test_run.failure_kind is FailureKind.LINK_DOWN
        _report("PASS", bench.test_run.failure_message)

    def test_lines_through_router_thread(self) -> None:
        profile = TestProfile(
            name="BOOT",
            instructions=[Instruction("Boot", desired_output="MMCSD boot", terminal=Channel.BOOT)],
        )
        with TestBench(profile, log_dir=None, interval_s=0.02) as bench:
            bench.start()
            bench.router.deliver(Channel.BOOT, b"MMCSD boot\r\n")
            assert bench.run(timeout_s=5) is RunStatus.COMPLETED

    def test_negative_interval_rejected(self) -> None:
        with pytest.raises(ValueError):
            TestBench(_display_profile(), interval_s=-1.0)
