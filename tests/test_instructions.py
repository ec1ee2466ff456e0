"""
Instruction model and attempt policy tests.

Cursor movement, fresh copies per run, checkbox labels, failure messages
and the bounded attempt counter.

Run with:
    pytest tests/test_instructions.py -v -s
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
    from typeguard import TypeCheckError
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

from test_assistant.exceptions import AttemptsExhaustedError, RunStateError
from test_assistant.instructions import Instruction, InstructionList
from test_assistant.policy import AttemptPolicy, FailureKind, failure_message
from test_assistant.types import Channel


def _report(label: str, detail: str = "") -> None:
    if detail:
        print(f"  [{label}] {detail}")
    else:
        print(f"  [{label}]")


def _script() -> List[Instruction]:
    return [
        Instruction("Power on the board", check_required=False),
        Instruction(
            "Wait for MMCSD boot", desired_output="MMCSD boot",
            terminal=Channel.BOOT, checkbox_text="Boot from SD",
        ),
        Instruction(
            "Wait for the application", desired_output="Main app",
            terminal=Channel.MAIN, checkbox_text="Main app",
        ),
    ]


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — InstructionList
# ═══════════════════════════════════════════════════════════════════════════

class TestCursor:
    """The cursor moves forward on completion and back only onto completed steps."""

    def test_empty_script_rejected(self) -> None:
        with pytest.raises(ValueError):
            InstructionList([])

    def test_display_step_advances_without_check(self) -> None:
        items = InstructionList(_script())
        assert items.can_advance()
        assert items.advance()
        assert items.current_index == 1

    def test_pending_step_blocks_advance(self) -> None:
        items = InstructionList(_script())
        items.advance()
        assert not items.advance()
        assert items.current_index == 1

    def test_no_advance_past_last(self) -> None:
        _report("TEST", "Complete every step, then try to step off the end")
        items = InstructionList(_script())
        for item in items:
            item.check_completed = True
        assert items.advance()
        assert items.advance()
        assert items.at_last
        assert not items.advance()
        assert items.current_index == 2
        _report("PASS", "Cursor stays on the last instruction")

    def test_step_back_only_onto_completed(self) -> None:
        _report("TEST", "Step back onto an incomplete display step is refused")
        items = InstructionList(_script())
        items.advance()
        assert not items.step_back()
        items[0].check_completed = True
        assert items.step_back()
        assert items.current_index == 0
        assert not items.step_back()
        _report("PASS")

    def test_all_complete(self) -> None:
        items = InstructionList(_script())
        assert not items.all_complete()
        for item in items:
            item.check_completed = True
        assert items.all_complete()

    def test_rewind(self) -> None:
        items = InstructionList(_script())
        items.advance()
        items.rewind()
        assert items.current_index == 0


class TestFreshCopies:
    """Run-time outcomes never leak back into the script."""

    def test_list_holds_copies(self) -> None:
        script = _script()
        items = InstructionList(script)
        items[1].check_completed = True
        items[1].actual_output = "MMCSD boot"
        assert not script[1].check_completed
        assert script[1].actual_output is None

    def test_fresh_copy_clears_outcomes_keeps_script_fields(self) -> None:
        original = Instruction(
            "AIN6", desired_output="AIN6", terminal=Channel.MAIN,
            special_check="ain6", error_text="AIN6 out of range",
        )
        original.check_completed = True
        original.actual_output = "ADC0 AIN6 voltage: 1225mV"
        original.outcome_recorded = True
        original.reconnect_attempts = 2
        copy = original.fresh_copy()
        assert copy is not original
        assert not copy.check_completed
        assert copy.actual_output is None
        assert not copy.outcome_recorded
        assert copy.reconnect_attempts == 0
        assert copy.special_check == "ain6"
        assert copy.error_text == "AIN6 out of range"


class TestCheckboxInfo:
    """Labels for the operator's progress list, first instruction excluded."""

    def test_labels(self) -> None:
        items = InstructionList(_script())
        assert items.checkbox_info() == {1: "Boot from SD", 2: "Main app"}

    def test_first_instruction_never_listed(self) -> None:
        script = _script()
        script[0].checkbox_text = "Power"
        assert 0 not in InstructionList(script).checkbox_info()


# ═══════════════════════════════════════════════════════════════════════════
#  TESTS — Attempt policy
# ═══════════════════════════════════════════════════════════════════════════

class TestAttemptPolicy:
    """Three failures inhibit the test until an override."""

    def test_three_failures_inhibit(self) -> None:
        _report("TEST", "Record failures until inhibited")
        policy = AttemptPolicy("ADC")
        assert policy.record_failure()
        assert policy.record_failure()
        assert not policy.record_failure()
        assert policy.inhibited
        assert policy.attempt_count == 3
        assert policy.attempts_remaining == 0
        _report("PASS", f"attempt_count={policy.attempt_count}")

    def test_count_capped(self) -> None:
        policy = AttemptPolicy("ADC", max_attempts=2)
        for _ in range(5):
            policy.record_failure()
        assert policy.attempt_count == 2

    def test_ensure_allowed_raises_when_inhibited(self) -> None:
        policy = AttemptPolicy("ADC", max_attempts=1)
        policy.ensure_allowed("start")
        policy.record_failure()
        with pytest.raises(AttemptsExhaustedError) as exc_info:
            policy.ensure_allowed("restart")
        assert exc_info.value.test_name == "ADC"
        assert exc_info.value.attempt_count == 1
        assert isinstance(exc_info.value, RunStateError)
        _report("CAUGHT", str(exc_info.value))

    def test_override(self) -> None:
        policy = AttemptPolicy("ADC", max_attempts=1)
        policy.record_failure()
        policy.override()
        assert not policy.inhibited
        policy.ensure_allowed("start")

    def test_invalid_max(self) -> None:
        with pytest.raises(ValueError):
            AttemptPolicy("ADC", max_attempts=0)

    def test_type_enforced(self) -> None:
        with pytest.raises((TypeError, TypeCheckError)):
            AttemptPolicy("ADC", max_attempts="3")  # type: ignore[arg-type]


class TestFailureMessage:
    """Operator-facing cause strings."""

    def test_every_kind_has_a_message(self) -> None:
        for kind in FailureKind:
            assert failure_message(kind)

    def test_detail_appended(self) -> None:
        msg = failure_message(FailureKind.ERROR_MARKER, "BOOT: ERROR: ddr init")
        assert msg.startswith("Test Aborted ERROR was present")
        assert msg.endswith("BOOT: ERROR: ddr init")

    def test_mismatch_text(self) -> None:
        assert failure_message(FailureKind.MISMATCH_THRESHOLD) == "ERROR : Too many MISMATCH"
