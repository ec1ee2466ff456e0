"""Custom exceptions for the test engine and serial transport."""

from __future__ import annotations


class TestAssistantError(Exception):
    """Common base exception for all test_assistant errors."""
    __test__ = False  # not a pytest test class


class SerialCommunicationError(TestAssistantError):
    """Base exception for serial communication errors.

    Raised when a serial port cannot be opened, configured, read from or
    written to, or when any unexpected I/O failure occurs on a link.
    """
    pass


class SerialTimeoutError(SerialCommunicationError):
    """Exception for serial operations that did not finish in time."""
    pass


class ScriptError(TestAssistantError):
    """Exception for malformed test scripts.

    Attributes:
        source: Where the script came from (file path or profile name).
    """

    def __init__(self, message: str, *, source: str = "") -> None:
        super().__init__(message)
        self.source = source


class RunStateError(TestAssistantError):
    """Exception for operations that are invalid in the run's current state."""
    pass


class AttemptsExhaustedError(RunStateError):
    """Exception raised when a test run has used up all of its attempts.

    Attributes:
        test_name: Name of the inhibited test.
        attempt_count: Number of attempts already consumed.
    """

    def __init__(self, message: str, *, test_name: str, attempt_count: int) -> None:
        super().__init__(message)
        self.test_name = test_name
        self.attempt_count = attempt_count
