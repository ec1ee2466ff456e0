"""Per-test check strategies and run-wide termination conditions.

Instead of one subclass per test type, a test profile carries a set of named
``SpecialCheck`` objects (looked up by ``Instruction.special_check``) and a
list of ``TerminationCondition`` objects that are evaluated on every tick.

A special check replaces the plain substring match for its instruction and
reports a ``CheckResult``; it never raises for bad device output.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Dict, Mapping, Optional, Sequence, Tuple

from . import ERROR_MARKERS, MISMATCH_MARKER, MISMATCH_THRESHOLD, POWER_ON_TIMEOUT_S
from .buffer import ChannelBuffer
from .instructions import Instruction
from .matcher import (
    Verdict,
    check_bytes_copied,
    check_voltage_range,
    count_mismatches,
    extract_voltage,
    file_found,
    mismatch_threshold_exceeded,
    status_after,
)
from .policy import FailureKind
from .types import Channel, Clock

logger = logging.getLogger("test_assistant.checks")


@dataclasses.dataclass(frozen=True)
class CheckContext:
    """Everything a special check may look at for one evaluation."""
    instruction: Instruction
    buffer: Optional[ChannelBuffer]
    buffers: Mapping[Channel, ChannelBuffer]
    clock: Clock
    timer_started_at: Optional[float]
    cancelled: threading.Event = dataclasses.field(default_factory=threading.Event)

    @property
    def token(self) -> str:
        return self.instruction.desired_output or ""


@dataclasses.dataclass(frozen=True)
class CheckResult:
    """Outcome reported by a special check.

    Attributes:
        verdict: ``PENDING`` keeps waiting; ``FAIL`` / ``UNVERIFIED`` fail
            the run with ``failure_kind``.
        actual_output: Diagnostic text recorded on the instruction.
        detail: Cause string for failures.
        failure_kind: Failure classification when the verdict is not a pass.
        outcome_label: Verdict label written to the result sink on a pass.
        evidence: Text of the line to suppress once the instruction passes.
        suppress_evidence: Suppress ``evidence`` on a pass even when the
            instruction does not opt in with ``suppress_on_match``.
    """
    verdict: Verdict
    actual_output: Optional[str] = None
    detail: Optional[str] = None
    failure_kind: FailureKind = FailureKind.CHECK_FAILED
    outcome_label: str = "PASS"
    evidence: Optional[str] = None
    suppress_evidence: bool = False

    @classmethod
    def pending(cls) -> CheckResult:
        return cls(Verdict.PENDING)


class SpecialCheck:
    """Base class for per-instruction checks that replace substring matching."""

    kind = "special"

    def check(self, ctx: CheckContext) -> CheckResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class VoltageRangeCheck(SpecialCheck):
    """Read ``voltage: <n>mV`` from the first line carrying ``token`` and range-check it."""

    kind = "voltage_range"

    def __init__(self, token: Optional[str], minimum: int, maximum: int) -> None:
        if minimum > maximum:
            raise ValueError(f"Invalid voltage range [{minimum}, {maximum}]")
        self.token = token
        self.minimum = minimum
        self.maximum = maximum

    def check(self, ctx: CheckContext) -> CheckResult:
        token = self.token or ctx.token
        if ctx.buffer is None:
            return CheckResult.pending()
        line = ctx.buffer.first_match(token)
        if line is None:
            return CheckResult.pending()

        verdict = check_voltage_range(line.text, self.minimum, self.maximum)
        if verdict is Verdict.PASS:
            return CheckResult(verdict, actual_output=line.text, evidence=line.text)
        if verdict is Verdict.UNVERIFIED:
            return CheckResult(
                verdict,
                actual_output=line.text,
                detail=f"no voltage reading in {line.text!r}",
                failure_kind=FailureKind.PARSE_FAILURE,
            )
        return CheckResult(
            verdict,
            actual_output=line.text,
            detail=(
                f"{token} {extract_voltage(line.text)}mV outside "
                f"{self.minimum}-{self.maximum}mV"
            ),
        )

    def __repr__(self) -> str:
        return f"VoltageRangeCheck({self.token!r}, {self.minimum}, {self.maximum})"


class BytesCopiedCheck(SpecialCheck):
    """Require a ``copied: <n>`` report with a positive byte count."""

    kind = "bytes_copied"

    def __init__(self, token: Optional[str] = "Done! Bytes copied:") -> None:
        self.token = token

    def check(self, ctx: CheckContext) -> CheckResult:
        token = self.token or ctx.token
        if ctx.buffer is None:
            return CheckResult.pending()
        line = ctx.buffer.first_match(token)
        if line is None:
            return CheckResult.pending()

        verdict = check_bytes_copied(line.text)
        if verdict is Verdict.PASS:
            # The copy report always counts as consumed
            return CheckResult(
                verdict, actual_output=line.text, evidence=line.text, suppress_evidence=True,
            )
        if verdict is Verdict.UNVERIFIED:
            return CheckResult(
                verdict,
                actual_output=line.text,
                detail=f"no byte count in {line.text!r}",
                failure_kind=FailureKind.PARSE_FAILURE,
            )
        return CheckResult(verdict, actual_output=line.text, detail="zero bytes copied")


class FileFoundCheck(SpecialCheck):
    """The line after ``"Looking for file ..."`` must confirm the file exists."""

    kind = "file_found"

    def __init__(self, expected: str = "File found!") -> None:
        self.expected = expected

    def check(self, ctx: CheckContext) -> CheckResult:
        if ctx.buffer is None:
            return CheckResult.pending()
        verdict = file_found(ctx.buffer, ctx.token, self.expected)
        if verdict is Verdict.PASS:
            return CheckResult(verdict, actual_output="File Found!", evidence=ctx.token)
        if verdict is Verdict.FAIL:
            return CheckResult(
                verdict,
                actual_output=ctx.buffer.next_line_after(ctx.token),
                detail=ctx.token,
                failure_kind=FailureKind.FILE_NOT_FOUND,
            )
        return CheckResult.pending()


class StatusSuffixCheck(SpecialCheck):
    """Judge a self-test line by what follows the test name on the same line."""

    kind = "status_suffix"

    def __init__(self, pass_words: Sequence[str] = ("Correct", "Success")) -> None:
        self.pass_words = tuple(pass_words)

    def check(self, ctx: CheckContext) -> CheckResult:
        if ctx.buffer is None:
            return CheckResult.pending()
        line = ctx.buffer.first_match(ctx.token)
        if line is None:
            return CheckResult.pending()

        verdict, rest = status_after(line.text, ctx.token, self.pass_words)
        if verdict is Verdict.PASS:
            return CheckResult(verdict, actual_output=rest, evidence=line.text)
        return CheckResult(verdict, actual_output=rest, detail=ctx.token + rest)

    def __repr__(self) -> str:
        return f"StatusSuffixCheck({self.pass_words!r})"


class ElapsedTimeCheck(SpecialCheck):
    """Report the time between the run's timer start and this instruction's output."""

    kind = "elapsed_time"

    def check(self, ctx: CheckContext) -> CheckResult:
        if ctx.buffer is None or not ctx.buffer.contains(ctx.token):
            return CheckResult.pending()
        if ctx.timer_started_at is None:
            return CheckResult(
                Verdict.UNVERIFIED,
                detail=f"{ctx.token!r} seen before the timer was started",
                failure_kind=FailureKind.PARSE_FAILURE,
            )
        elapsed = ctx.clock() - ctx.timer_started_at
        return CheckResult(
            Verdict.PASS,
            actual_output=f"Execution Time : {int(elapsed)} s",
            outcome_label="Additional",
        )


class BootSourceCheck(SpecialCheck):
    """Await the expected boot banner and fail if the board boots from elsewhere.

    Args:
        wrong_sources: Banners that mean the board loaded from the wrong medium.
        min_lines: Only fail once the buffer holds more than this many lines,
            for boards that print a wrong-source banner before falling back.
    """

    kind = "boot_source"

    def __init__(self, wrong_sources: Sequence[str], min_lines: int = 0) -> None:
        self.wrong_sources = tuple(wrong_sources)
        self.min_lines = min_lines

    def check(self, ctx: CheckContext) -> CheckResult:
        if ctx.buffer is None:
            return CheckResult.pending()
        line = ctx.buffer.first_match(ctx.token)
        if line is not None:
            return CheckResult(Verdict.PASS, actual_output=line.text)

        for source in self.wrong_sources:
            wrong = ctx.buffer.first_match(source)
            if wrong is not None and len(ctx.buffer) > self.min_lines:
                return CheckResult(
                    Verdict.FAIL,
                    actual_output=wrong.text,
                    detail=wrong.text,
                    failure_kind=FailureKind.LOAD_SOURCE,
                )
        return CheckResult.pending()

    def __repr__(self) -> str:
        return f"BootSourceCheck({self.wrong_sources!r}, min_lines={self.min_lines})"


class PowerOnCheck(SpecialCheck):
    """Wait up to ``timeout_s`` for any output on the instruction's channel.

    The wait is local to this check; the buffer keeps filling from the
    router thread while it runs.  Silence is not a failure: the instruction
    stays pending and the next tick waits again.
    Setting ``ctx.cancelled`` ends the wait early.
    """

    kind = "power_on"

    def __init__(self, timeout_s: float = POWER_ON_TIMEOUT_S, poll_interval_s: float = 0.1) -> None:
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s

    def check(self, ctx: CheckContext) -> CheckResult:
        if ctx.buffer is None:
            return CheckResult.pending()
        deadline = time.monotonic() + self.timeout_s
        while True:
            if len(ctx.buffer) > 0:
                logger.info("[CHECK] Power on: %s is producing output", ctx.buffer.name)
                return CheckResult(Verdict.PASS, actual_output="POWER ON")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if ctx.cancelled.wait(min(self.poll_interval_s, remaining)):
                logger.info("[CHECK] Power-on wait on %s cancelled", ctx.buffer.name)
                return CheckResult.pending()

        logger.warning(
            "[CHECK] POWER NOT ON: no output on %s after %.1fs", ctx.buffer.name, self.timeout_s,
        )
        return CheckResult.pending()


# ---------------------------------------------------------------------------
# Run-wide termination conditions
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class ConditionOutcome:
    """Result of one termination-condition scan."""
    triggered: bool
    failure_kind: FailureKind = FailureKind.CHECK_FAILED
    detail: str = ""
    mismatch_count: Optional[int] = None


class TerminationCondition:
    """Base class for cumulative checks that can fail a run on any tick."""

    def evaluate(self, buffers: Mapping[Channel, ChannelBuffer]) -> ConditionOutcome:
        raise NotImplementedError


class ErrorMarkerCondition(TerminationCondition):
    """Fail the run as soon as a device error marker appears on any watched channel."""

    def __init__(
        self,
        markers: Sequence[str] = ERROR_MARKERS,
        channels: Sequence[Channel] = (Channel.BOOT, Channel.MAIN),
    ) -> None:
        self.markers = tuple(markers)
        self.channels = tuple(channels)

    def evaluate(self, buffers: Mapping[Channel, ChannelBuffer]) -> ConditionOutcome:
        for channel in self.channels:
            buffer = buffers.get(channel)
            if buffer is None:
                continue
            for marker in self.markers:
                line = buffer.first_match(marker)
                if line is not None:
                    return ConditionOutcome(
                        True, FailureKind.ERROR_MARKER, f"{channel.value}: {line.text}",
                    )
        return ConditionOutcome(False)

    def __repr__(self) -> str:
        return f"ErrorMarkerCondition({self.markers!r})"


class MismatchCondition(TerminationCondition):
    """Fail the run once memory-test mismatches exceed the tolerated count."""

    def __init__(
        self,
        marker: str = MISMATCH_MARKER,
        threshold: int = MISMATCH_THRESHOLD,
        channel: Channel = Channel.MAIN,
    ) -> None:
        self.marker = marker
        self.threshold = threshold
        self.channel = channel

    def evaluate(self, buffers: Mapping[Channel, ChannelBuffer]) -> ConditionOutcome:
        buffer = buffers.get(self.channel)
        if buffer is None:
            return ConditionOutcome(False)
        count = count_mismatches(buffer, self.marker)
        if mismatch_threshold_exceeded(count, self.threshold):
            return ConditionOutcome(
                True,
                FailureKind.MISMATCH_THRESHOLD,
                f"{count} x {self.marker} (limit {self.threshold})",
                mismatch_count=count,
            )
        return ConditionOutcome(False, mismatch_count=count)

    def __repr__(self) -> str:
        return f"MismatchCondition({self.marker!r}, {self.threshold})"


# Registry used by the script loader: kind name -> constructor
SPECIAL_CHECK_TYPES: Dict[str, type] = {
    cls.kind: cls
    for cls in (
        VoltageRangeCheck,
        BytesCopiedCheck,
        FileFoundCheck,
        StatusSuffixCheck,
        ElapsedTimeCheck,
        BootSourceCheck,
        PowerOnCheck,
    )
}

TERMINATION_TYPES: Dict[str, type] = {
    "error_marker": ErrorMarkerCondition,
    "mismatch": MismatchCondition,
}

__all__: Tuple[str, ...] = (
    "CheckContext",
    "CheckResult",
    "SpecialCheck",
    "VoltageRangeCheck",
    "BytesCopiedCheck",
    "FileFoundCheck",
    "StatusSuffixCheck",
    "ElapsedTimeCheck",
    "BootSourceCheck",
    "PowerOnCheck",
    "ConditionOutcome",
    "TerminationCondition",
    "ErrorMarkerCondition",
    "MismatchCondition",
    "SPECIAL_CHECK_TYPES",
    "TERMINATION_TYPES",
)
