"""Failure classification and the bounded retry policy for test runs."""

from __future__ import annotations

import enum
import logging

from typeguard import typechecked

from . import MAX_TEST_ATTEMPTS
from .exceptions import AttemptsExhaustedError

logger = logging.getLogger("test_assistant.policy")


class FailureKind(enum.Enum):
    """Why a run failed.

    ``PATTERN_PENDING`` is listed for completeness: it means "keep waiting"
    and never fails a run.
    """
    PATTERN_PENDING = "PATTERN_PENDING"
    PARSE_FAILURE = "PARSE_FAILURE"
    CHECK_FAILED = "CHECK_FAILED"
    ERROR_MARKER = "ERROR_MARKER"
    MISMATCH_THRESHOLD = "MISMATCH_THRESHOLD"
    LINK_DOWN = "LINK_DOWN"
    TRANSPORT = "TRANSPORT"
    LOAD_SOURCE = "LOAD_SOURCE"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    ABORTED = "ABORTED"


# Operator-facing cause strings for failures that carry no device text
FAILURE_MESSAGES = {
    FailureKind.PATTERN_PENDING: "Waiting for expected output",
    FailureKind.PARSE_FAILURE: "Could not verify: output did not contain a readable value",
    FailureKind.CHECK_FAILED: "Check failed",
    FailureKind.ERROR_MARKER: "Test Aborted ERROR was present (Check log for more info)",
    FailureKind.MISMATCH_THRESHOLD: "ERROR : Too many MISMATCH",
    FailureKind.LINK_DOWN: "Terminal not connected: reconnect attempts exhausted",
    FailureKind.TRANSPORT: "Serial I/O error while talking to the board",
    FailureKind.LOAD_SOURCE: "ERROR: Loading from unknown/wrong device",
    FailureKind.FILE_NOT_FOUND: "ERROR: File not found !",
    FailureKind.ABORTED: "Test aborted by operator",
}


def failure_message(kind: FailureKind, detail: str = "") -> str:
    """Build the cause string shown to the operator for a failure."""
    base = FAILURE_MESSAGES[kind]
    return f"{base}: {detail}" if detail else base


@typechecked
class AttemptPolicy:
    """Counts hardware failures of one test and inhibits it at the cap.

    Operator aborts are not counted; only ``record_failure()`` consumes an
    attempt.  Once ``attempt_count`` reaches ``max_attempts`` the test stays
    inhibited until ``override()`` is called.
    """

    def __init__(self, test_name: str, max_attempts: int = MAX_TEST_ATTEMPTS) -> None:
        if max_attempts <= 0:
            raise ValueError(
                f"Invalid max_attempts {max_attempts!r} for test {test_name}. "
                f"Must be a positive integer (default {MAX_TEST_ATTEMPTS})."
            )
        self.test_name = test_name
        self.max_attempts = max_attempts
        self.attempt_count = 0

    @property
    def inhibited(self) -> bool:
        return self.attempt_count >= self.max_attempts

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempt_count)

    def ensure_allowed(self, operation: str) -> None:
        """Raise if the test is inhibited.

        Raises:
            AttemptsExhaustedError: When all attempts have been used.
        """
        if self.inhibited:
            msg = (
                f"Cannot {operation} test {self.test_name}: all {self.max_attempts} "
                f"attempts have been used. An operator override is required."
            )
            logger.warning("[POLICY] %s", msg)
            raise AttemptsExhaustedError(
                msg, test_name=self.test_name, attempt_count=self.attempt_count,
            )

    def record_failure(self) -> bool:
        """Consume one attempt.  The count never goes above ``max_attempts``.

        Returns:
            ``True`` if the test may be retried afterwards.
        """
        self.attempt_count = min(self.attempt_count + 1, self.max_attempts)
        if self.inhibited:
            logger.warning(
                "[POLICY] %s failed %d/%d times, test inhibited",
                self.test_name, self.attempt_count, self.max_attempts,
            )
            return False
        logger.info(
            "[POLICY] %s failed %d/%d times, %d attempts left",
            self.test_name, self.attempt_count, self.max_attempts, self.attempts_remaining,
        )
        return True

    def override(self) -> None:
        """Clear the attempt count so an inhibited test can run again."""
        logger.info(
            "[POLICY] Override on %s: attempt count %d reset to 0",
            self.test_name, self.attempt_count,
        )
        self.attempt_count = 0
