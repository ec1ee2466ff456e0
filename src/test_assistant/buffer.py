"""Bounded, thread-safe line history for one serial console.

Each channel owns one ``ChannelBuffer``.  The reassembler pushes completed
lines into it from the router's consumer thread while the sequencer reads it
from the tick thread, so every read works on a snapshot taken under the lock.

Lines can be *suppressed*: once a line has been consumed as evidence for one
instruction it is hidden from every later look-up, but it still occupies a
slot in the buffer and is evicted in arrival order like any other line.
"""

from __future__ import annotations

import collections
import dataclasses
import logging
import threading
from typing import Deque, List, Optional

from typeguard import typechecked

from . import BUFFER_CAPACITY

logger = logging.getLogger("test_assistant.buffer")


@dataclasses.dataclass(eq=False)
class Line:
    """One reassembled line of console output.

    Attributes:
        text: The normalized line text.  Never reassigned.
        suppressed: ``True`` once the line has been consumed by a match.
            Only ever goes from ``False`` to ``True``.
    """
    text: str
    suppressed: bool = False

    def suppress(self) -> None:
        """Hide this line from future look-ups.  Safe to call repeatedly."""
        self.suppressed = True


@typechecked
class ChannelBuffer:
    """Ordered, capacity-bounded history of ``Line`` objects.

    Pushing beyond ``capacity`` evicts the oldest line first.  The bound is
    part of the contract: a slow consumer loses old evidence rather than
    letting memory grow without limit.

    Example::

        buf = ChannelBuffer("MAIN")
        buf.push(Line("ADC0 AIN6 voltage: 1225mV"))
        if buf.contains("AIN6"):
            buf.suppress_first("AIN6")
    """

    def __init__(self, name: str, capacity: int = BUFFER_CAPACITY) -> None:
        """Initialize an empty buffer.

        Args:
            name: Channel name used in log messages (``"MAIN"`` / ``"BOOT"``).
            capacity: Maximum number of lines retained.  Must be positive.

        Raises:
            ValueError: If ``capacity`` is not positive.
        """
        if capacity <= 0:
            raise ValueError(
                f"Invalid capacity {capacity!r} for channel buffer {name}. "
                f"Capacity must be a positive integer (default {BUFFER_CAPACITY})."
            )
        self.name = name
        self.capacity = capacity
        self._lines: Deque[Line] = collections.deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._evicted = 0

    # ---- Writers ----

    def push(self, line: Line) -> None:
        """Append a line, evicting the oldest one when full."""
        with self._lock:
            if len(self._lines) == self.capacity:
                self._evicted += 1
                if self._evicted == 1 or self._evicted % self.capacity == 0:
                    logger.debug(
                        "[BUFFER] %s full (%d lines), evicting oldest (%d evicted so far)",
                        self.name, self.capacity, self._evicted,
                    )
            self._lines.append(line)

    def clear(self) -> None:
        """Drop every line."""
        with self._lock:
            dropped = len(self._lines)
            self._lines.clear()
            self._evicted = 0
        logger.debug("[BUFFER] %s cleared (%d lines dropped)", self.name, dropped)

    # ---- Readers ----

    def snapshot(self) -> List[Line]:
        """Return the current lines, oldest first, as a new list."""
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    @property
    def evicted(self) -> int:
        """Number of lines evicted since the last ``clear()``."""
        return self._evicted

    def contains(self, pattern: str) -> bool:
        """Return ``True`` if any unsuppressed line contains ``pattern``."""
        return self.first_match(pattern) is not None

    def first_match(self, pattern: str) -> Optional[Line]:
        """Return the first unsuppressed line containing ``pattern``, or ``None``."""
        for line in self.snapshot():
            if not line.suppressed and pattern in line.text:
                return line
        return None

    def suppress_first(self, pattern: str) -> bool:
        """Suppress the first unsuppressed line containing ``pattern``.

        Returns:
            ``True`` if a line was found and suppressed.
        """
        line = self.first_match(pattern)
        if line is None:
            return False
        line.suppress()
        logger.debug("[BUFFER] %s suppressed %r", self.name, line.text[:80])
        return True

    def suppress_all(self, pattern: str) -> int:
        """Suppress every unsuppressed line containing ``pattern``.

        Returns:
            Number of lines newly suppressed.
        """
        count = 0
        for line in self.snapshot():
            if not line.suppressed and pattern in line.text:
                line.suppress()
                count += 1
        if count:
            logger.debug("[BUFFER] %s suppressed %d lines matching %r", self.name, count, pattern)
        return count

    def next_line_after(self, pattern: str) -> str:
        """Return the text of the first non-empty line after the first match.

        Suppressed lines are skipped both as the match and as the result.

        Returns:
            The following line's text, or ``pattern`` itself when no match
            exists or nothing follows it.
        """
        found = False
        for line in self.snapshot():
            if line.suppressed:
                continue
            if found and line.text:
                return line.text
            if not found and pattern in line.text:
                found = True
        return pattern

    def count_occurrences(self, pattern: str) -> int:
        """Count substring occurrences of ``pattern`` across every line's text.

        This counts occurrences, not lines: a line containing the pattern
        twice contributes two.  Suppressed lines are included.
        """
        if not pattern:
            return 0
        return sum(line.text.count(pattern) for line in self.snapshot())
