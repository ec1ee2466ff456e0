"""Stateless matching and extraction helpers over console text.

These functions combine ``ChannelBuffer`` primitives with the numeric
extraction the acceptance scripts need.  None of them raise on malformed
device output: text that cannot be parsed yields ``Verdict.UNVERIFIED``
("could not verify"), which the sequencer escalates to a run failure.
"""

from __future__ import annotations

import enum
import logging
import re
from typing import Optional, Sequence, Tuple

from . import MISMATCH_MARKER, MISMATCH_THRESHOLD
from .buffer import ChannelBuffer

logger = logging.getLogger("test_assistant.matcher")

_VOLTAGE_RE = re.compile(r"voltage:\s*(\d+)")
_BYTES_COPIED_RE = re.compile(r"copied:\s*(\d+)")


class Verdict(enum.Enum):
    """Outcome of one evaluation of an expected condition."""
    PENDING = "PENDING"        # evidence not seen yet; keep waiting
    PASS = "PASS"
    FAIL = "FAIL"              # evidence seen and it is wrong
    UNVERIFIED = "UNVERIFIED"  # evidence seen but could not be parsed


def _extract_int(pattern: re.Pattern, text: Optional[str]) -> Optional[int]:
    if not text:
        return None
    match = pattern.search(text)
    if match is None:
        return None
    return int(match.group(1))


def extract_voltage(text: Optional[str]) -> Optional[int]:
    """Extract the millivolt reading from ``"... voltage: <n>mV"``.

    Returns:
        The integer reading, or ``None`` if the text carries none.
    """
    return _extract_int(_VOLTAGE_RE, text)


def check_voltage_range(text: Optional[str], minimum: int, maximum: int) -> Verdict:
    """Check a voltage line against an inclusive ``[minimum, maximum]`` range.

    Example::

        check_voltage_range("ADC0 AIN6 voltage: 1225mV", 1215, 1235)  # PASS
        check_voltage_range("ADC0 AIN6 voltage: 1200mV", 1215, 1235)  # FAIL
    """
    value = extract_voltage(text)
    if value is None:
        logger.warning("[MATCH] Could not read a voltage from %r", text)
        return Verdict.UNVERIFIED
    if minimum <= value <= maximum:
        return Verdict.PASS
    logger.info("[MATCH] Voltage %dmV outside [%d, %d]", value, minimum, maximum)
    return Verdict.FAIL


def extract_bytes_copied(text: Optional[str]) -> Optional[int]:
    """Extract the byte count from ``"... copied: <n>"``."""
    return _extract_int(_BYTES_COPIED_RE, text)


def check_bytes_copied(text: Optional[str]) -> Verdict:
    """A copy report is valid only when it names a positive byte count."""
    value = extract_bytes_copied(text)
    if value is None:
        logger.warning("[MATCH] Could not read a byte count from %r", text)
        return Verdict.UNVERIFIED
    return Verdict.PASS if value > 0 else Verdict.FAIL


def count_mismatches(buffer: ChannelBuffer, marker: str = MISMATCH_MARKER) -> int:
    """Count every occurrence of ``marker`` across the buffer."""
    return buffer.count_occurrences(marker)


def mismatch_threshold_exceeded(count: int, threshold: int = MISMATCH_THRESHOLD) -> bool:
    """The run tolerates up to ``threshold`` mismatches; one more fails it."""
    return count > threshold


def status_after(
    text: str,
    token: str,
    pass_words: Sequence[str],
) -> Tuple[Verdict, str]:
    """Judge the remainder of a line after ``token``.

    Firmware self-tests print ``"<test name> ... Correct"`` or
    ``"<test name> ... (match)"``; the verdict depends on what follows the
    test name on the same line.

    Returns:
        ``(verdict, remainder)``.  ``PENDING`` when ``token`` is absent.
    """
    index = text.find(token)
    if index < 0:
        return Verdict.PENDING, ""
    rest = text[index + len(token):]
    if any(word in rest for word in pass_words):
        return Verdict.PASS, rest
    return Verdict.FAIL, rest


def file_found(buffer: ChannelBuffer, token: str, expected: str = "File found!") -> Verdict:
    """Check that the line following ``token`` reports the file as found.

    Returns:
        ``PENDING`` while ``token`` has not been seen or nothing follows it,
        ``PASS`` if the next line is ``expected``, ``FAIL`` otherwise.
    """
    following = buffer.next_line_after(token)
    if following == token:
        return Verdict.PENDING
    return Verdict.PASS if following == expected else Verdict.FAIL
