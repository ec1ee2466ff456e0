"""Instruction sequencer: the per-test state machine driven by an external tick.

``TestRun`` owns the two channel buffers, a fresh ``InstructionList`` and the
attempt policy for one test type.  Lines are pushed in through ``on_line()``
(usually by ``LineRouter``) and a tick driver calls ``evaluate()`` or
``tick()`` at its own cadence; the run never schedules itself.

``evaluate()`` uses a non-blocking lock.  If another evaluation is still in
flight the call returns immediately with ``ran=False`` instead of queueing
behind it; the next tick picks up where the skipped one would have.
"""

from __future__ import annotations

import dataclasses
import enum
import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from typeguard import typechecked

from . import BUFFER_CAPACITY, MAX_RECONNECT_ATTEMPTS, MAX_TEST_ATTEMPTS
from .buffer import ChannelBuffer, Line
from .checks import CheckContext, SpecialCheck, TerminationCondition
from .exceptions import RunStateError, ScriptError, SerialCommunicationError, TestAssistantError
from .instructions import Instruction, InstructionList
from .matcher import Verdict
from .policy import AttemptPolicy, FailureKind, failure_message
from .reassembler import TerminalLog
from .types import (
    Channel,
    Clock,
    ConnectivityProvider,
    ConnectivitySnapshot,
    LogPaths,
    OutcomeRow,
    ReconnectFunction,
    SendFunction,
)

logger = logging.getLogger("test_assistant.sequencer")


class RunStatus(enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RESTARTING = "RESTARTING"


@dataclasses.dataclass(frozen=True)
class TestPointOutcome:
    """Structured record handed to the result sink once per instruction."""
    __test__ = False  # not a pytest test class

    test_name: str
    expected_output: str
    actual_output: str
    verdict: str
    attempt_number: int

    def as_row(self) -> OutcomeRow:
        return (
            self.test_name,
            self.expected_output,
            self.actual_output,
            self.verdict,
            self.attempt_number,
        )


ResultSink = Callable[[TestPointOutcome], None]


class InMemoryResultLog:
    """Result sink that keeps every outcome in a list."""

    def __init__(self) -> None:
        self.outcomes: List[TestPointOutcome] = []
        self._lock = threading.Lock()

    def __call__(self, outcome: TestPointOutcome) -> None:
        with self._lock:
            self.outcomes.append(outcome)

    def __len__(self) -> int:
        with self._lock:
            return len(self.outcomes)

    def rows(self) -> List[OutcomeRow]:
        with self._lock:
            return [outcome.as_row() for outcome in self.outcomes]

    def verdicts(self) -> List[str]:
        with self._lock:
            return [outcome.verdict for outcome in self.outcomes]

    def clear(self) -> None:
        with self._lock:
            self.outcomes.clear()


def logging_result_sink(outcome: TestPointOutcome) -> None:
    """Result sink that writes each outcome to the ``test_assistant.results`` logger."""
    logging.getLogger("test_assistant.results").info(
        "[RESULT] %s | expected=%r | actual=%r | %s | attempt %d",
        outcome.test_name,
        outcome.expected_output,
        outcome.actual_output,
        outcome.verdict,
        outcome.attempt_number,
    )


@dataclasses.dataclass
class TestProfile:
    """Everything that makes one test type different from another.

    Attributes:
        name: Test name used in results and exported log file names.
        instructions: The static script, copied afresh for every run.
        special_checks: Handlers keyed by ``Instruction.special_check``.
        termination_conditions: Cumulative checks evaluated on every tick.
    """
    __test__ = False  # not a pytest test class

    name: str
    instructions: Sequence[Instruction]
    special_checks: Dict[str, SpecialCheck] = dataclasses.field(default_factory=dict)
    termination_conditions: List[TerminationCondition] = dataclasses.field(default_factory=list)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Reject scripts the sequencer could never complete.

        Raises:
            ScriptError: If the script is empty, names an unknown special
                check, or has a checked step with nothing to check.
        """
        if not self.name:
            raise ScriptError("A test profile needs a name.")
        if len(self.instructions) == 0:
            raise ScriptError(f"Test {self.name} has no instructions.", source=self.name)

        for index, item in enumerate(self.instructions):
            where = f"Test {self.name}, instruction {index} ({item.text!r})"
            if item.has_special_check and item.special_check not in self.special_checks:
                raise ScriptError(
                    f"{where}: unknown special check {item.special_check!r}. "
                    f"Known checks: {sorted(self.special_checks)}",
                    source=self.name,
                )
            if item.desired_output is not None and item.terminal is Channel.NONE:
                raise ScriptError(
                    f"{where}: desired output {item.desired_output!r} needs a MAIN or BOOT terminal.",
                    source=self.name,
                )
            if item.has_special_check and item.terminal is Channel.NONE:
                raise ScriptError(
                    f"{where}: special check {item.special_check!r} needs a MAIN or BOOT terminal.",
                    source=self.name,
                )
            if item.send_on_match and item.terminal is Channel.NONE:
                raise ScriptError(
                    f"{where}: send_on_match needs a MAIN or BOOT terminal to send on.",
                    source=self.name,
                )
            checkable = (
                item.desired_output is not None
                or item.has_special_check
                or item.gates_on_connectivity
            )
            if item.check_required and not checkable:
                raise ScriptError(
                    f"{where}: check required but nothing to check. Set desired_output, "
                    f"special_check or a connectivity gate, or set check_required to false.",
                    source=self.name,
                )


@dataclasses.dataclass(frozen=True)
class EvaluationResult:
    """What one call to ``evaluate()`` did.

    Attributes:
        ran: ``False`` when the call was skipped because another evaluation
            held the lock.
        status: Run status after the call.
        instruction_index: Cursor position after the call.
        instruction_complete: Whether the current instruction is complete.
        failure_kind / message: Set once the run has failed or been aborted.
    """
    ran: bool
    status: RunStatus
    instruction_index: int
    instruction_complete: bool = False
    failure_kind: Optional[FailureKind] = None
    message: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return not self.ran


@typechecked
class TestRun:
    """One test type's run state, re-used across attempts.

    Lifecycle::

        NOT_STARTED --start()--> IN_PROGRESS --> COMPLETED | FAILED
        any --abort()--> RESTARTING
        FAILED | RESTARTING | COMPLETED --restart()--> NOT_STARTED

    Every failure except an operator abort consumes one attempt.  After
    ``max_attempts`` failures ``start()`` and ``restart()`` raise
    ``AttemptsExhaustedError`` until ``override_attempts()`` is called.

    Example::

        results = InMemoryResultLog()
        run = TestRun(profile, result_sink=results, send=transport.send)
        run.start()
        while run.status is RunStatus.IN_PROGRESS:
            run.tick(transport.connectivity())
            time.sleep(1.0)
    """
    __test__ = False  # not a pytest test class

    def __init__(
        self,
        profile: TestProfile,
        result_sink: Optional[ResultSink] = None,
        send: Optional[SendFunction] = None,
        connectivity_provider: Optional[ConnectivityProvider] = None,
        reconnect: Optional[ReconnectFunction] = None,
        clock: Clock = time.monotonic,
        log_dir: Optional[str] = None,
        terminal_logs: Optional[Mapping[Channel, TerminalLog]] = None,
        buffer_capacity: int = BUFFER_CAPACITY,
        max_attempts: int = MAX_TEST_ATTEMPTS,
        max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS,
    ) -> None:
        """Initialize a run in ``NOT_STARTED``.

        Args:
            profile: Script and per-test strategies.
            result_sink: Receives one ``TestPointOutcome`` per checked instruction.
            send: Transport output used for ``send_on_match`` texts.
            connectivity_provider: Supplies link state when ``evaluate()``
                is called without a snapshot.
            reconnect: Out-of-band reconnect side effect for link-gated steps.
            clock: Monotonic clock used for timed spans.
            log_dir: Where terminal transcripts are exported when the run
                ends.  Nothing is exported when ``None``.
            terminal_logs: Per-channel transcripts to export and flush.
            buffer_capacity: Line history kept per channel.
            max_attempts: Failures allowed before the test is inhibited.
            max_reconnect_attempts: Failed reconnects tolerated per
                link-gated instruction before the run fails.
        """
        if max_reconnect_attempts <= 0:
            raise ValueError(
                f"Invalid max_reconnect_attempts {max_reconnect_attempts!r}. "
                f"Must be a positive integer (default {MAX_RECONNECT_ATTEMPTS})."
            )
        self.profile = profile
        self.buffers: Dict[Channel, ChannelBuffer] = {
            Channel.MAIN: ChannelBuffer(Channel.MAIN.value, buffer_capacity),
            Channel.BOOT: ChannelBuffer(Channel.BOOT.value, buffer_capacity),
        }
        self.instructions = InstructionList(profile.instructions)
        self.policy = AttemptPolicy(profile.name, max_attempts)
        self.status = RunStatus.NOT_STARTED
        self.mismatch_count = 0
        self.failure_kind: Optional[FailureKind] = None
        self.failure_message: Optional[str] = None

        self._result_sink = result_sink
        self._send = send
        self._connectivity_provider = connectivity_provider
        self._reconnect = reconnect
        self._clock = clock
        self._log_dir = log_dir
        self._terminal_logs: Dict[Channel, TerminalLog] = dict(terminal_logs or {})
        self._max_reconnect_attempts = max_reconnect_attempts

        self._eval_lock = threading.Lock()
        self._cancel = threading.Event()
        self._failure_latched = False
        self._started_at: Optional[float] = None
        self._timer_started_at: Optional[float] = None

    # ---- Properties ----

    @property
    def name(self) -> str:
        return self.profile.name

    @property
    def attempt_count(self) -> int:
        return self.policy.attempt_count

    @property
    def inhibited(self) -> bool:
        return self.policy.inhibited

    @property
    def current(self) -> Instruction:
        return self.instructions.current

    # ---- Input ----

    def on_line(self, channel: Channel, line: Line) -> None:
        """Accept one reassembled line.  Ignored unless the run is in progress."""
        if self.status is not RunStatus.IN_PROGRESS:
            return
        buffer = self.buffers.get(channel)
        if buffer is not None:
            buffer.push(line)

    # ---- Lifecycle ----

    def start(self) -> None:
        """Begin the run.

        Raises:
            AttemptsExhaustedError: If the test is inhibited.
            RunStateError: If the run has already been started; call
                ``restart()`` after it ends.
        """
        self.policy.ensure_allowed("start")
        if self.status is RunStatus.IN_PROGRESS:
            logger.debug("[SEQ] %s already in progress", self.name)
            return
        if self.status is not RunStatus.NOT_STARTED:
            raise RunStateError(
                f"Cannot start test {self.name} from status {self.status.value}. "
                f"Call restart() first."
            )
        for buffer in self.buffers.values():
            buffer.clear()
        self._cancel.clear()
        self._started_at = self._clock()
        self.status = RunStatus.IN_PROGRESS
        logger.info(
            "[SEQ] %s started (attempt %d/%d, %d instructions)",
            self.name, self.attempt_count + 1, self.policy.max_attempts, len(self.instructions),
        )

    def abort(self, reason: str = "") -> None:
        """Stop the run immediately without counting an attempt.

        Buffers are reset at once; the run waits in ``RESTARTING`` until
        ``restart()`` is called.  A check that is still waiting inside an
        evaluation is told to stop first.
        """
        self._cancel.set()
        with self._eval_lock:
            message = failure_message(FailureKind.ABORTED, reason)
            self.status = RunStatus.RESTARTING
            self.failure_kind = FailureKind.ABORTED
            self.failure_message = message
            self.current.error_text = message
            for buffer in self.buffers.values():
                buffer.clear()
        logger.warning("[SEQ] %s aborted at step %d: %s", self.name, self.instructions.current_index, message)

    def restart(self) -> None:
        """Reset the run to ``NOT_STARTED`` with pristine instructions.

        Raises:
            AttemptsExhaustedError: If the test is inhibited.
            RunStateError: If the run is still in progress; abort it first.
        """
        with self._eval_lock:
            if self.status is RunStatus.IN_PROGRESS:
                raise RunStateError(
                    f"Cannot restart test {self.name} while it is in progress. Call abort() first."
                )
            self.policy.ensure_allowed("restart")
            previous = self.status
            self._reset()
        logger.info(
            "[SEQ] %s reset from %s (attempt %d/%d used)",
            self.name, previous.value, self.attempt_count, self.policy.max_attempts,
        )

    def override_attempts(self) -> None:
        """Clear the attempt count of an inhibited test."""
        self.policy.override()

    def _reset(self) -> None:
        self.instructions = InstructionList(self.profile.instructions)
        for buffer in self.buffers.values():
            buffer.clear()
        for log in self._terminal_logs.values():
            log.clear()
        self.status = RunStatus.NOT_STARTED
        self.mismatch_count = 0
        self.failure_kind = None
        self.failure_message = None
        self._failure_latched = False
        self._cancel.clear()
        self._started_at = None
        self._timer_started_at = None

    # ---- Evaluation ----

    def evaluate(self, connectivity: Optional[ConnectivitySnapshot] = None) -> EvaluationResult:
        """Evaluate the current instruction and the run-wide conditions once.

        Never raises for device or transport problems; every outcome is
        reported through the returned result and the run status.

        Args:
            connectivity: Link state for this tick.  Read from the
                connectivity provider when omitted.

        Returns:
            An ``EvaluationResult``; ``ran`` is ``False`` if another
            evaluation was already in progress.
        """
        if not self._eval_lock.acquire(blocking=False):
            return self._skipped()
        try:
            return self._evaluate_locked(connectivity)
        finally:
            self._eval_lock.release()

    def tick(self, connectivity: Optional[ConnectivitySnapshot] = None) -> EvaluationResult:
        """Evaluate, then advance if the current step is done and needs no acknowledgement."""
        if not self._eval_lock.acquire(blocking=False):
            return self._skipped()
        try:
            result = self._evaluate_locked(connectivity)
            if self.status is RunStatus.IN_PROGRESS and not self.current.user_ack_required:
                self._advance_locked(acknowledged=False)
            return result
        finally:
            self._eval_lock.release()

    def advance(self, acknowledged: bool = False) -> bool:
        """Move the cursor to the next instruction.

        A display step (``check_required`` false) counts as complete once
        the cursor moves past it.

        Args:
            acknowledged: The operator confirmed the current step.  Required
                for steps with ``user_ack_required``.

        Returns:
            ``True`` if the cursor moved.
        """
        with self._eval_lock:
            return self._advance_locked(acknowledged)

    def _advance_locked(self, acknowledged: bool) -> bool:
        if self.status is not RunStatus.IN_PROGRESS:
            return False
        item = self.current
        if item.user_ack_required and not acknowledged:
            return False
        if not item.check_required:
            item.check_completed = True
        elif not item.check_completed:
            return False
        moved = self.instructions.advance()
        if moved:
            logger.info(
                "[SEQ] %s step %d/%d: %s",
                self.name, self.instructions.current_index, len(self.instructions) - 1,
                self.current.text,
            )
        return moved

    def step_back(self) -> bool:
        """Return to the previous instruction if it is complete."""
        with self._eval_lock:
            if self.status is not RunStatus.IN_PROGRESS:
                return False
            return self.instructions.step_back()

    def _skipped(self) -> EvaluationResult:
        logger.debug("[SEQ] %s evaluation already running, tick skipped", self.name)
        return EvaluationResult(
            ran=False,
            status=self.status,
            instruction_index=self.instructions.current_index,
        )

    def _evaluate_locked(self, connectivity: Optional[ConnectivitySnapshot]) -> EvaluationResult:
        if self.status is RunStatus.IN_PROGRESS:
            if connectivity is None:
                connectivity = self._read_connectivity()

            item = self.current
            item.attempts_left = 0
            if not item.check_completed:
                self._evaluate_instruction(item, connectivity)

            if self.status is RunStatus.IN_PROGRESS:
                self._check_termination_conditions()

            if self.status is RunStatus.IN_PROGRESS and self.instructions.all_complete():
                self._complete()

        return EvaluationResult(
            ran=True,
            status=self.status,
            instruction_index=self.instructions.current_index,
            instruction_complete=self.current.check_completed,
            failure_kind=self.failure_kind,
            message=self.failure_message,
        )

    def _read_connectivity(self) -> ConnectivitySnapshot:
        if self._connectivity_provider is None:
            return ConnectivitySnapshot()
        return self._connectivity_provider()

    def _evaluate_instruction(self, item: Instruction, connectivity: ConnectivitySnapshot) -> None:
        if not item.check_required:
            item.check_completed = True
            return

        if item.has_special_check:
            self._evaluate_special_check(item)
        elif item.desired_output is not None:
            buffer = self.buffers[item.terminal]
            line = buffer.first_match(item.desired_output)
            if line is None:
                item.attempts_left += 1
                return
            self._instruction_passed(item, line.text, evidence=item.desired_output)
        elif item.gates_on_connectivity:
            self._evaluate_connectivity(item, connectivity)

    def _evaluate_special_check(self, item: Instruction) -> None:
        handler = self.profile.special_checks[item.special_check]
        ctx = CheckContext(
            instruction=item,
            buffer=self.buffers.get(item.terminal),
            buffers=self.buffers,
            clock=self._clock,
            timer_started_at=self._timer_started_at,
            cancelled=self._cancel,
        )
        result = handler.check(ctx)
        if result.verdict is Verdict.PENDING:
            item.attempts_left += 1
        elif result.verdict is Verdict.PASS:
            self._instruction_passed(
                item,
                result.actual_output,
                label=result.outcome_label,
                evidence=result.evidence,
                suppress=result.suppress_evidence,
            )
        else:
            if result.actual_output is not None:
                item.actual_output = result.actual_output
            self._fail(result.failure_kind, result.detail or "")

    def _evaluate_connectivity(self, item: Instruction, snapshot: ConnectivitySnapshot) -> None:
        wanted = []
        if item.check_main_connected:
            wanted.append(Channel.MAIN)
        if item.check_boot_connected:
            wanted.append(Channel.BOOT)

        down = [channel for channel in wanted if not snapshot.is_connected(channel)]
        if not down:
            self._instruction_passed(item, "Connected")
            return

        if self._reconnect is None:
            # Nothing can bring the link back from here; wait for the operator
            item.attempts_left += 1
            return

        item.reconnect_attempts += 1
        names = ", ".join(channel.value for channel in down)
        logger.info(
            "[SEQ] %s: %s not connected, reconnect attempt %d/%d",
            self.name, names, item.reconnect_attempts, self._max_reconnect_attempts,
        )
        recovered = [self._try_reconnect(channel) for channel in down]
        if all(recovered):
            if self._connectivity_provider is not None:
                snapshot = self._connectivity_provider()
                down = [channel for channel in down if not snapshot.is_connected(channel)]
            else:
                down = []
            if not down:
                self._instruction_passed(item, "Connected")
                return

        if item.reconnect_attempts >= self._max_reconnect_attempts:
            self._fail(FailureKind.LINK_DOWN, names)
        else:
            item.attempts_left += 1

    def _try_reconnect(self, channel: Channel) -> bool:
        try:
            return self._reconnect(channel)
        except SerialCommunicationError as exc:
            logger.warning("[SEQ] Reconnect of %s failed: %s", channel.value, exc)
            return False

    def _instruction_passed(
        self,
        item: Instruction,
        actual_output: Optional[str],
        label: str = "PASS",
        evidence: Optional[str] = None,
        suppress: bool = False,
    ) -> None:
        for text in item.send_on_match:
            if not self._send_text(item.terminal, text):
                return

        item.check_completed = True
        item.actual_output = actual_output
        if (item.suppress_on_match or suppress) and evidence:
            buffer = self.buffers.get(item.terminal)
            if buffer is not None:
                buffer.suppress_first(evidence)
        if item.starts_timer:
            self._timer_started_at = self._clock()
            logger.debug("[SEQ] %s timer started at step %d", self.name, self.instructions.current_index)

        logger.info("[SEQ] %s step %d passed: %r", self.name, self.instructions.current_index, actual_output)
        self._emit(item, label)

    def _send_text(self, channel: Channel, text: str) -> bool:
        if self._send is None:
            logger.warning("[SEQ] No transport output configured; not sending %r to %s", text, channel.value)
            return True
        try:
            self._send(channel, text)
        except SerialCommunicationError as exc:
            self._fail(FailureKind.TRANSPORT, str(exc))
            return False
        logger.debug("[SEQ] Sent %r to %s", text, channel.value)
        return True

    def _check_termination_conditions(self) -> None:
        for condition in self.profile.termination_conditions:
            outcome = condition.evaluate(self.buffers)
            if outcome.mismatch_count is not None:
                self.mismatch_count = outcome.mismatch_count
            if outcome.triggered:
                self._fail(outcome.failure_kind, outcome.detail)
                return

    def _fail(self, kind: FailureKind, detail: str = "") -> None:
        if self._failure_latched:
            return
        self._failure_latched = True

        item = self.current
        if kind is FailureKind.CHECK_FAILED and item.error_text:
            message = f"{item.error_text}: {detail}" if detail else item.error_text
        else:
            message = failure_message(kind, detail)
        item.error_text = message
        self.failure_kind = kind
        self.failure_message = message
        self.status = RunStatus.FAILED
        logger.warning(
            "[SEQ] %s FAILED at step %d (%s): %s",
            self.name, self.instructions.current_index, kind.value, message,
        )
        self._emit(item, "FAIL")
        self.policy.record_failure()
        self._export_logs("run failed")

    def _complete(self) -> None:
        self.status = RunStatus.COMPLETED
        elapsed = self._clock() - self._started_at if self._started_at is not None else 0.0
        logger.info("[SEQ] %s COMPLETED in %.1fs", self.name, elapsed)
        self._export_logs("run complete")

    def _emit(self, item: Instruction, verdict: str) -> None:
        if item.outcome_recorded:
            return
        item.outcome_recorded = True
        if self._result_sink is None:
            return
        outcome = TestPointOutcome(
            test_name=self.name,
            expected_output=item.desired_output or item.text,
            actual_output=item.actual_output or item.error_text or "",
            verdict=verdict,
            attempt_number=self.attempt_count + 1,
        )
        try:
            self._result_sink(outcome)
        except Exception as exc:
            logger.warning("[SEQ] Result sink raised for %s: %s", self.name, exc)

    def export_logs(self, context: str = "export") -> LogPaths:
        """Write every terminal transcript to the log directory.

        Returns:
            Written file paths keyed by channel name.

        Raises:
            TestAssistantError: If a transcript cannot be written.
        """
        paths: LogPaths = {}
        if self._log_dir is None:
            return paths
        for channel, log in self._terminal_logs.items():
            paths[channel.value] = log.export(self._log_dir, self.name, context)
        return paths

    def _export_logs(self, context: str) -> None:
        try:
            self.export_logs(context)
        except TestAssistantError as exc:
            logger.warning("[SEQ] %s: could not save terminal logs: %s", self.name, exc)
