"""Queue-backed routing of raw serial bytes to reassembled lines.

Serial reader threads (one per channel) only ever call ``deliver()``, which
puts the chunk on a ``queue.Queue`` and returns.  A single consumer thread
drains the queue, decodes each channel's bytes with its own incremental
decoder (multi-byte characters may be split across reads), runs the
channel's ``LineReassembler`` and hands every completed line to the
subscribed listeners.

Within one channel lines reach listeners in arrival order.  MAIN and BOOT
are independent streams with no ordering between them.
"""

from __future__ import annotations

import codecs
import logging
import queue
import threading
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from typeguard import typechecked

from . import SERIAL_ENCODING
from .buffer import Line
from .reassembler import LineReassembler, TerminalLog
from .types import Channel

logger = logging.getLogger("test_assistant.router")

Listener = Callable[[Channel, Line], None]

_CHANNELS = (Channel.MAIN, Channel.BOOT)

# How long the consumer blocks on an empty queue before re-checking for stop
_QUEUE_POLL_S = 0.1


@typechecked
class LineRouter:
    """Turns ``(channel, bytes)`` deliveries into per-channel lines.

    Example::

        router = LineRouter()
        router.subscribe(run.on_line)
        router.start()
        router.deliver(Channel.BOOT, b"MMCSD boot\\r\\n")
        ...
        router.stop()

    Without a consumer thread, ``process_pending()`` drains the queue on the
    calling thread instead.  Use one or the other, not both.
    """

    def __init__(
        self,
        encoding: str = SERIAL_ENCODING,
        terminal_logs: Optional[Mapping[Channel, TerminalLog]] = None,
    ) -> None:
        """Initialize a router with one decoder and reassembler per channel.

        Args:
            encoding: Text encoding of both consoles.  Undecodable bytes
                are replaced, never raised.
            terminal_logs: Transcripts that receive every completed line.
                One per channel is created when omitted.
        """
        self.encoding = encoding
        self._queue: queue.Queue = queue.Queue()
        logs = dict(terminal_logs or {})
        self.terminal_logs: Dict[Channel, TerminalLog] = {
            channel: logs[channel] if channel in logs else TerminalLog(channel.value)
            for channel in _CHANNELS
        }
        self._reassemblers: Dict[Channel, LineReassembler] = {
            channel: LineReassembler(channel.value, log=self.terminal_logs[channel])
            for channel in _CHANNELS
        }
        self._decoders = {
            channel: codecs.getincrementaldecoder(encoding)("replace") for channel in _CHANNELS
        }
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.chunks_routed = 0
        self.lines_routed = 0

    # ---- Listeners ----

    def subscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def reassembler(self, channel: Channel) -> LineReassembler:
        """Return the reassembler of ``channel`` (MAIN or BOOT)."""
        return self._reassemblers[channel]

    # ---- Producer side ----

    def deliver(self, channel: Channel, data: bytes) -> None:
        """Enqueue one raw chunk.  Never blocks and never decodes.

        Raises:
            ValueError: If ``channel`` is ``Channel.NONE``.
        """
        if channel is Channel.NONE:
            raise ValueError("Cannot deliver data on Channel.NONE; use MAIN or BOOT.")
        if data:
            self._queue.put_nowait((channel, data))

    # ---- Consumer side ----

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the consumer thread."""
        if self.is_running:
            logger.debug("[ROUTER] Consumer already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._consume_loop, name="line-router", daemon=True,
        )
        self._thread.start()
        logger.info("[ROUTER] Consumer started")

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the consumer thread after it drains what is already queued."""
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("[ROUTER] Consumer did not stop within %.1fs", timeout)
        else:
            logger.info(
                "[ROUTER] Consumer stopped (%d chunks, %d lines routed)",
                self.chunks_routed, self.lines_routed,
            )
        self._thread = None

    def process_pending(self) -> int:
        """Drain the queue on the calling thread.

        Returns:
            Number of lines dispatched.
        """
        dispatched = 0
        while True:
            try:
                channel, data = self._queue.get_nowait()
            except queue.Empty:
                return dispatched
            dispatched += self._route(channel, data)

    def reset(self) -> None:
        """Drop queued chunks, pending partial lines and decoder state."""
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
        for channel in _CHANNELS:
            self._reassemblers[channel].reset()
            self._decoders[channel].reset()

    def _consume_loop(self) -> None:
        while True:
            try:
                item: Tuple[Channel, bytes] = self._queue.get(timeout=_QUEUE_POLL_S)
            except queue.Empty:
                if self._stop_event.is_set():
                    return
                continue
            self._route(*item)

    def _route(self, channel: Channel, data: bytes) -> int:
        text = self._decoders[channel].decode(data, False)
        self.chunks_routed += 1
        if not text:
            return 0
        lines = self._reassemblers[channel].feed(text)
        for line in lines:
            self._dispatch(channel, line)
        self.lines_routed += len(lines)
        return len(lines)

    def _dispatch(self, channel: Channel, line: Line) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(channel, line)
            except Exception as exc:
                logger.warning(
                    "[ROUTER] Listener raised %s: %s "
                    "(listener errors are swallowed to protect the read path)",
                    type(exc).__name__, exc,
                )
