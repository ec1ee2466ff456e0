"""Instruction model: the scripted steps of one acceptance test.

A test script is an ordered list of ``Instruction`` records.  Static script
data is copied into a fresh ``InstructionList`` at the start of every run, and
the copies are then mutated in place as evaluation proceeds, so a restarted
run never sees outcomes left over from a previous attempt.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from typeguard import typechecked

from .types import Channel

logger = logging.getLogger("test_assistant.instructions")


@dataclasses.dataclass
class Instruction:
    """One step of a test script.

    Script fields (set once from static data):
        text: Operator-facing description of the step.
        desired_output: Substring to await on ``terminal``; ``None`` for
            steps that do not look at console output.
        check_required: ``False`` for pure display steps that auto-complete.
        terminal: Which channel buffer to consult.
        check_boot_connected / check_main_connected: Gate on link-up state
            instead of console text.
        special_check: Name of a per-test handler that replaces the plain
            substring match, or ``None``.
        user_ack_required: The operator must acknowledge before advancing.
        checkbox_text: Short label shown in the operator's progress list.
        suppress_on_match: Hide the matched line once this step passes.
        send_on_match: Texts written back on ``terminal`` once this step
            passes (e.g. a keystroke to get past a prompt).
        starts_timer: Record the pass time as the start of a timed span.

    Outcome fields (mutated during the run):
        check_completed, actual_output, error_text, attempts_left,
        outcome_recorded.
    """
    text: str
    desired_output: Optional[str] = None
    check_required: bool = True
    terminal: Channel = Channel.NONE
    check_boot_connected: bool = False
    check_main_connected: bool = False
    special_check: Optional[str] = None
    user_ack_required: bool = False
    checkbox_text: Optional[str] = None
    suppress_on_match: bool = False
    send_on_match: Tuple[str, ...] = ()
    starts_timer: bool = False

    check_completed: bool = False
    actual_output: Optional[str] = None
    error_text: Optional[str] = None
    attempts_left: int = 0
    outcome_recorded: bool = False
    reconnect_attempts: int = 0

    @property
    def has_special_check(self) -> bool:
        return self.special_check is not None

    @property
    def gates_on_connectivity(self) -> bool:
        return self.check_boot_connected or self.check_main_connected

    def fresh_copy(self) -> Instruction:
        """Return a copy carrying only the script fields."""
        return dataclasses.replace(
            self,
            check_completed=False,
            actual_output=None,
            attempts_left=0,
            outcome_recorded=False,
            reconnect_attempts=0,
        )


@typechecked
class InstructionList:
    """Ordered instructions for one test plus a cursor into them.

    The cursor only moves forward while the test progresses.  It may step
    back by one, but only onto an instruction that is already complete, so
    an operator can never rewind past unconfirmed state.
    """

    def __init__(self, script: Sequence[Instruction]) -> None:
        """Build a list of fresh copies of ``script``.

        Raises:
            ValueError: If ``script`` is empty.
        """
        if len(script) == 0:
            raise ValueError("An instruction list needs at least one instruction.")
        self._items: List[Instruction] = [item.fresh_copy() for item in script]
        self._index = 0

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self._items)

    def __getitem__(self, index: int) -> Instruction:
        return self._items[index]

    @property
    def current_index(self) -> int:
        return self._index

    @property
    def current(self) -> Instruction:
        return self._items[self._index]

    @property
    def previous(self) -> Optional[Instruction]:
        return self._items[self._index - 1] if self._index > 0 else None

    @property
    def at_last(self) -> bool:
        return self._index >= len(self._items) - 1

    def can_advance(self) -> bool:
        """The current step is complete (or needs no check) and a next one exists."""
        item = self.current
        done = item.check_completed or not item.check_required
        return done and not self.at_last

    def advance(self) -> bool:
        """Move to the next instruction if the current one allows it.

        Returns:
            ``True`` if the cursor moved.
        """
        if not self.can_advance():
            return False
        self._index += 1
        logger.debug("[INSTR] Cursor -> %d/%d", self._index, len(self._items) - 1)
        return True

    def step_back(self) -> bool:
        """Move back one instruction, only onto a completed one.

        Returns:
            ``True`` if the cursor moved.
        """
        previous = self.previous
        if previous is None or not previous.check_completed:
            return False
        self._index -= 1
        logger.debug("[INSTR] Cursor <- %d/%d", self._index, len(self._items) - 1)
        return True

    def all_complete(self) -> bool:
        return all(item.check_completed for item in self._items)

    def rewind(self) -> None:
        """Put the cursor back on the first instruction."""
        self._index = 0

    def checkbox_info(self) -> Dict[int, str]:
        """Map instruction index to checkbox label for labelled steps.

        The first instruction is never listed: a checkbox is ticked when the
        cursor moves past its instruction.
        """
        return {
            index: item.checkbox_text
            for index, item in enumerate(self._items)
            if index > 0 and item.checkbox_text is not None
        }
