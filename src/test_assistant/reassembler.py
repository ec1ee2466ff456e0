"""Reassemble fragmented console text into complete lines.

Serial drivers hand back whatever happened to be in the receive buffer, so a
single line can arrive split across many reads and a single read can carry
many lines.  ``LineReassembler`` keeps the incomplete tail of each chunk and
prefixes it onto the next one, so the lines it emits do not depend on where
the transport happened to cut the stream.

Boards in the field terminate lines inconsistently; LF, CR+LF, LF+CR and
CR+LF+CR are all accepted.
"""

from __future__ import annotations

import logging
import os
import re
import threading
from typing import List, Optional

from typeguard import typechecked

from .buffer import Line
from .exceptions import TestAssistantError

logger = logging.getLogger("test_assistant.reassembler")

# Longest alternatives first so CR+LF+CR is never split into CR+LF and a stray CR
_DELIMITER_RE = re.compile(r"\r\n\r|\n\r|\r\n|\n")
_DELIMITERS = ("\r\n\r", "\n\r", "\r\n", "\n")


def ends_with_delimiter(text: str) -> bool:
    """Return ``True`` if ``text`` ends with a recognized line terminator."""
    return text.endswith(_DELIMITERS)


def normalize_line(segment: str) -> str:
    """Apply the secondary clean-up every completed line goes through.

    Tabs become two spaces, a leading carriage return is dropped and leading
    whitespace is trimmed.
    """
    return segment.replace("\t", "  ").lstrip()


@typechecked
class TerminalLog:
    """Unbounded record of every line a channel produced during a test.

    Unlike ``ChannelBuffer`` this never evicts; it exists so the full console
    transcript can be exported once the run ends.
    """

    def __init__(self, channel_name: str) -> None:
        self.channel_name = channel_name
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def append(self, text: str) -> None:
        with self._lock:
            self._lines.append(text)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def export(self, directory: str, test_name: str, context: str) -> str:
        """Write the transcript to ``<directory>/<test_name>_<CHANNEL>.txt``.

        Args:
            directory: Destination folder, created if missing.
            test_name: Name of the test the transcript belongs to.
            context: Description of the purpose, embedded into error messages.

        Returns:
            Path of the written file.

        Raises:
            TestAssistantError: If the folder or file cannot be written.
        """
        path = os.path.join(directory, f"{test_name}_{self.channel_name}.txt")
        lines = self.lines()
        try:
            os.makedirs(directory, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                for text in lines:
                    f.write(text + "\n")
        except OSError as exc:
            msg = (
                f"[{context}] Failed to export {self.channel_name} terminal log "
                f"to {path}: {exc}"
            )
            logger.error("[LOG-EXPORT] %s", msg)
            raise TestAssistantError(msg) from exc

        logger.info(
            "[LOG-EXPORT] [%s] Wrote %d %s lines to %s",
            context, len(lines), self.channel_name, path,
        )
        return path


@typechecked
class LineReassembler:
    """Turns arbitrary text fragments into complete ``Line`` objects.

    ``feed()`` is called from a single consumer per channel; it never blocks
    and never waits for more data.

    Example::

        r = LineReassembler("BOOT")
        r.feed("MMCSD bo")      # -> []
        r.feed("ot\\r\\nDone")    # -> [Line("MMCSD boot")]
        r.pending               # -> "Done"
    """

    def __init__(self, channel_name: str, log: Optional[TerminalLog] = None) -> None:
        """Initialize a reassembler.

        Args:
            channel_name: Channel name used in log messages.
            log: Transcript that receives every completed line.  A private
                one is created when omitted.
        """
        self.channel_name = channel_name
        self.log = log if log is not None else TerminalLog(channel_name)
        self._carry = ""

    @property
    def pending(self) -> str:
        """Incomplete text waiting for its terminator."""
        return self._carry

    def reset(self) -> None:
        """Discard any incomplete carry-over text."""
        if self._carry:
            logger.debug(
                "[REASSEMBLE] %s discarding %d pending chars", self.channel_name, len(self._carry),
            )
        self._carry = ""

    def feed(self, chunk: str) -> List[Line]:
        """Consume one fragment and return the lines it completed.

        Args:
            chunk: Raw decoded text exactly as the transport delivered it.

        Returns:
            Completed lines in arrival order.  An unterminated tail is kept
            internally and prefixed onto the next call.
        """
        combined = self._carry + chunk
        if not combined:
            return []

        segments = _DELIMITER_RE.split(combined)
        if ends_with_delimiter(combined):
            self._carry = ""
        else:
            self._carry = segments.pop()

        lines = []
        for segment in segments:
            if not segment:
                continue
            text = normalize_line(segment)
            if not text:
                continue
            line = Line(text)
            self.log.append(text)
            lines.append(line)

        if lines:
            logger.debug(
                "[REASSEMBLE] %s +%d lines (pending %d chars)",
                self.channel_name, len(lines), len(self._carry),
            )
        return lines
