"""
Matcher and extraction tests.

Voltage range checks, byte-count checks, mismatch counting, status-suffix
judging and the "File found!" follower check.

Run with:
    pytest tests/test_matcher.py -v -s
"""

from __future__ import annotations

import sys
from typing import List

import pytest

# ---------------------------------------------------------------------------
# Dependency gate
# ---------------------------------------------------------------------------
_MISSING: List[str] = []

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

from test_assistant.buffer import ChannelBuffer, Line
from test_assistant.matcher import (
    Verdict,
    check_bytes_copied,
    check_voltage_range,
    count_mismatches,
    extract_bytes_copied,
    extract_voltage,
    file_found,
    mismatch_threshold_exceeded,
    status_after,
)


def _report(label: str, detail: str = "") -> None:
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


def _buffer(*texts: str) -> ChannelBuffer:
    buf = ChannelBuffer("MAIN")
    for text in texts:
        buf.push(Line(text))
    return buf


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Voltage
# ═══════════════════════════════════════════════════════════════════════════

class TestVoltage:
    """Inclusive millivolt ranges read from ``voltage: <n>mV`` lines."""

    def test_extract(self) -> None:
        assert extract_voltage("ADC0 AIN6 voltage: 1225mV") == 1225
        assert extract_voltage("voltage:900mV") == 900

    @pytest.mark.parametrize("text", [None, "", "ADC0 AIN6 voltage: mV", "no reading here"])
    def test_extract_nothing(self, text) -> None:
        assert extract_voltage(text) is None

    def test_in_range(self) -> None:
        _report("TEST", "1225mV against [1215, 1235]")
        assert check_voltage_range("ADC0 AIN6 voltage: 1225mV", 1215, 1235) is Verdict.PASS
        _report("PASS")

    def test_out_of_range(self) -> None:
        _report("TEST", "1200mV against [1215, 1235]")
        assert check_voltage_range("ADC0 AIN6 voltage: 1200mV", 1215, 1235) is Verdict.FAIL
        _report("PASS", "Out-of-range reading fails")

    def test_bounds_inclusive(self) -> None:
        assert check_voltage_range("voltage: 1215mV", 1215, 1235) is Verdict.PASS
        assert check_voltage_range("voltage: 1235mV", 1215, 1235) is Verdict.PASS
        assert check_voltage_range("voltage: 1236mV", 1215, 1235) is Verdict.FAIL

    def test_unreadable_is_unverified(self) -> None:
        _report("TEST", "Garbled reading")
        assert check_voltage_range("ADC0 AIN6 voltage: ???", 1215, 1235) is Verdict.UNVERIFIED
        assert check_voltage_range(None, 1215, 1235) is Verdict.UNVERIFIED
        _report("PASS", "Could not verify, never an exception")


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Bytes copied
# ═══════════════════════════════════════════════════════════════════════════

class TestBytesCopied:
    """A copy report passes only with a positive count."""

    def test_extract(self) -> None:
        assert extract_bytes_copied("Done! Bytes copied: 4096") == 4096

    def test_positive(self) -> None:
        assert check_bytes_copied("Done! Bytes copied: 4096") is Verdict.PASS

    def test_zero(self) -> None:
        assert check_bytes_copied("Done! Bytes copied: 0") is Verdict.FAIL

    def test_unreadable(self) -> None:
        assert check_bytes_copied("Done! Bytes copied: lots") is Verdict.UNVERIFIED


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Mismatches
# ═══════════════════════════════════════════════════════════════════════════

class TestMismatches:
    """Occurrence counting and the strictly-greater threshold."""

    def test_count_occurrences_not_lines(self) -> None:
        buf = _buffer("(MISMATCH) addr 0x10 (MISMATCH) addr 0x14", "ok", "(MISMATCH)")
        assert count_mismatches(buf) == 3

    def test_threshold_boundary(self) -> None:
        _report("TEST", "64 tolerated, 65 fails")
        assert not mismatch_threshold_exceeded(64)
        assert mismatch_threshold_exceeded(65)
        _report("PASS")

    def test_custom_threshold(self) -> None:
        assert mismatch_threshold_exceeded(2, threshold=1)
        assert not mismatch_threshold_exceeded(1, threshold=1)


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Status suffix and file found
# ═══════════════════════════════════════════════════════════════════════════

class TestStatusAfter:
    """The verdict is read from the text after the test name."""

    def test_pass_word(self) -> None:
        verdict, rest = status_after("DDR test ... Correct", "DDR test", ("Correct",))
        assert verdict is Verdict.PASS
        assert rest == " ... Correct"

    def test_fail_word(self) -> None:
        verdict, rest = status_after("DDR test ... Wrong", "DDR test", ("Correct",))
        assert verdict is Verdict.FAIL
        assert "Wrong" in rest

    def test_pass_word_before_token_ignored(self) -> None:
        verdict, _ = status_after("Correct: DDR test failed", "DDR test", ("Correct",))
        assert verdict is Verdict.FAIL

    def test_token_absent(self) -> None:
        assert status_after("unrelated", "DDR test", ("Correct",)) == (Verdict.PENDING, "")


class TestFileFound:
    """The line after the search announcement decides the verdict."""

    def test_found(self) -> None:
        buf = _buffer("Looking for file app.bin", "File found!")
        assert file_found(buf, "Looking for file") is Verdict.PASS

    def test_not_found(self) -> None:
        buf = _buffer("Looking for file app.bin", "File not found")
        assert file_found(buf, "Looking for file") is Verdict.FAIL

    def test_pending_until_follower_arrives(self) -> None:
        _report("TEST", "Announcement seen, result line not yet")
        buf = _buffer("Looking for file app.bin")
        assert file_found(buf, "Looking for file") is Verdict.PENDING
        buf.push(Line("File found!"))
        assert file_found(buf, "Looking for file") is Verdict.PASS
        _report("PASS", "PENDING then PASS")

    def test_pending_without_announcement(self) -> None:
        assert file_found(_buffer("boot"), "Looking for file") is Verdict.PENDING
