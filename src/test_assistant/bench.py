"""Wiring of transport, router and test run, plus the tick driver.

``TestBench`` is what the CLI's ``run`` command uses: it opens both
consoles, routes their bytes into a ``TestRun`` and ticks the run on a fixed
cadence until it completes or fails.  ``replay()`` pushes captured terminal
logs through the same engine without any hardware.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Iterable, Iterator, Optional

from typeguard import typechecked

from . import DEFAULT_LOG_DIR, SERIAL_ENCODING, SWAP_MARKER, SWAP_WINDOW_LINES, TICK_INTERVAL_S
from .buffer import Line
from .router import LineRouter
from .sequencer import ResultSink, RunStatus, TestProfile, TestRun
from .serial_link import DualChannelTransport
from .types import Channel, Clock, ConnectivitySnapshot

logger = logging.getLogger("test_assistant.bench")


@typechecked
class TestBench:
    """One board on the bench running one test profile.

    Example::

        router = LineRouter()
        transport = DualChannelTransport(router, "/dev/ttyUSB1", "/dev/ttyUSB0")
        with TestBench(profile, transport, result_sink=logging_result_sink) as bench:
            status = bench.run()
    """
    __test__ = False  # not a pytest test class

    def __init__(
        self,
        profile: TestProfile,
        transport: Optional[DualChannelTransport] = None,
        result_sink: Optional[ResultSink] = None,
        log_dir: Optional[str] = DEFAULT_LOG_DIR,
        interval_s: float = TICK_INTERVAL_S,
        clock: Clock = time.monotonic,
        swap_marker: Optional[str] = SWAP_MARKER,
    ) -> None:
        """Build the run and subscribe it to the router.

        Args:
            profile: The test to run.
            transport: Both serial links.  Without one the bench has no
                transport output and reports both links down; lines can
                still be fed through ``router.deliver()``.
            result_sink: Receives per-instruction outcomes.
            log_dir: Where terminal transcripts are exported.
            interval_s: Tick cadence in seconds.
            clock: Monotonic clock shared with the run.
            swap_marker: Banner only the BOOT processor prints.  Seeing it
                among the first lines of the MAIN console means the cables
                are swapped.  ``None`` disables the check.
        """
        if interval_s < 0:
            raise ValueError(f"Invalid tick interval {interval_s!r}. Must be >= 0.")
        self.transport = transport
        self.router = transport.router if transport is not None else LineRouter()
        self.interval_s = interval_s
        self.swap_marker = swap_marker
        self.swap_detected = False
        self._clock = clock
        self._stop_event = threading.Event()
        self.test_run = TestRun(
            profile,
            result_sink=result_sink,
            send=transport.send if transport is not None else None,
            connectivity_provider=transport.connectivity if transport is not None else None,
            reconnect=transport.reconnect if transport is not None else None,
            clock=clock,
            log_dir=log_dir,
            terminal_logs=self.router.terminal_logs,
        )
        self.router.subscribe(self.test_run.on_line)
        if swap_marker is not None:
            self.router.subscribe(self._watch_for_swap)

    def _watch_for_swap(self, channel: Channel, line: Line) -> None:
        """Abort the run if MAIN opens with the BOOT processor's banner."""
        if channel is not Channel.MAIN or self.swap_detected or self.swap_marker is None:
            return
        if self.swap_marker not in line.text:
            return
        if len(self.router.terminal_logs[Channel.MAIN]) > SWAP_WINDOW_LINES:
            return

        self.swap_detected = True
        logger.warning("[BENCH] MAIN console printed %r: consoles are connected backwards", line.text)
        if self.test_run.status is RunStatus.IN_PROGRESS:
            self.test_run.abort("MAIN and BOOT consoles are connected backwards")
        if self.transport is not None:
            self.transport.swap_ports()

    def start(self) -> None:
        """Open the consoles, start routing and start the test.

        Raises:
            AttemptsExhaustedError: If the test is inhibited.
        """
        self._stop_event.clear()
        self.swap_detected = False
        if self.transport is not None:
            state = self.transport.open(context=f"start {self.test_run.name}")
            logger.info(
                "[BENCH] Links: MAIN %s, BOOT %s",
                "up" if state.main_connected else "down",
                "up" if state.boot_connected else "down",
            )
        self.router.start()
        self.test_run.start()

    def run(self, timeout_s: Optional[float] = None) -> RunStatus:
        """Tick the test until it leaves ``IN_PROGRESS``, ``stop()`` is called or time runs out.

        Starts the bench first if the test has not been started.

        Returns:
            The run status when the loop ended.
        """
        if self.test_run.status is RunStatus.NOT_STARTED:
            self.start()

        deadline = self._clock() + timeout_s if timeout_s is not None else None
        while self.test_run.status is RunStatus.IN_PROGRESS and not self._stop_event.is_set():
            result = self.test_run.tick()
            if result.skipped:
                logger.debug("[BENCH] Tick skipped")
            if self.test_run.status is not RunStatus.IN_PROGRESS:
                break
            if deadline is not None and self._clock() >= deadline:
                logger.warning(
                    "[BENCH] %s still in progress after %.1fs, stopping at step %d",
                    self.test_run.name, timeout_s, self.test_run.instructions.current_index,
                )
                break
            self._stop_event.wait(self.interval_s)

        logger.info("[BENCH] %s ended with status %s", self.test_run.name, self.test_run.status.value)
        return self.test_run.status

    def stop(self) -> None:
        """End the tick loop and release the consoles."""
        self._stop_event.set()
        self.router.stop()
        if self.transport is not None:
            self.transport.close()

    def __enter__(self) -> TestBench:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.stop()


def _settle(run: TestRun) -> None:
    """Evaluate and advance until the run stops making progress."""
    while run.status is RunStatus.IN_PROGRESS:
        run.evaluate()
        if run.status is not RunStatus.IN_PROGRESS:
            return
        if not run.advance(acknowledged=True):
            return


def replay(
    profile: TestProfile,
    main_lines: Iterable[str] = (),
    boot_lines: Iterable[str] = (),
    result_sink: Optional[ResultSink] = None,
    encoding: str = SERIAL_ENCODING,
) -> TestRun:
    """Run ``profile`` against captured console output.

    The two transcripts are interleaved one line at a time and the run is
    settled after every step, so evidence is consumed in roughly the order
    it was captured.  Both links count as connected and operator
    acknowledgements are given automatically.

    Returns:
        The finished (or stalled) run.
    """
    run = TestRun(
        profile,
        result_sink=result_sink,
        connectivity_provider=lambda: ConnectivitySnapshot(main_connected=True, boot_connected=True),
    )
    router = LineRouter(encoding=encoding)
    router.subscribe(run.on_line)
    run.start()
    _settle(run)

    streams: Dict[Channel, Iterator[str]] = {
        Channel.MAIN: iter(main_lines),
        Channel.BOOT: iter(boot_lines),
    }
    while streams and run.status is RunStatus.IN_PROGRESS:
        for channel in list(streams):
            text = next(streams[channel], None)
            if text is None:
                del streams[channel]
                continue
            router.deliver(channel, (text.rstrip("\r\n") + "\n").encode(encoding))
        router.process_pending()
        _settle(run)

    logger.info(
        "[REPLAY] %s: %s at step %d/%d",
        run.name, run.status.value, run.instructions.current_index, len(run.instructions) - 1,
    )
    return run
