"""Serial transport for the two processor consoles.

``SerialLink`` wraps one pyserial port.  A background reader thread polls
``in_waiting`` and hands every chunk to ``LineRouter.deliver()`` untouched;
decoding and line reassembly happen on the router's consumer thread so the
read path never waits on the engine.

``DualChannelTransport`` owns the MAIN and BOOT links and exposes the three
primitives the sequencer needs: ``send(channel, text)``, ``connectivity()``
and ``reconnect(channel)``.

Cross-platform: works with Windows COM ports and Linux /dev/ttyUSB*,
/dev/ttyS* and /dev/ttyACM* devices.  Default line settings: 115200 8N1.
"""

from __future__ import annotations

import logging
import platform
import threading
import time
from typing import Dict, List, Optional

import serial
import serial.tools.list_ports
from typeguard import typechecked

from . import (
    DEFAULT_BOOT_PORT,
    DEFAULT_MAIN_PORT,
    SERIAL_BAUD_RATE,
    SERIAL_BYTESIZE,
    SERIAL_ENCODING,
    SERIAL_PARITY,
    SERIAL_POLL_INTERVAL_S,
    SERIAL_READ_TIMEOUT,
    SERIAL_STOPBITS,
    SERIAL_WRITE_TIMEOUT,
)
from .exceptions import SerialCommunicationError, SerialTimeoutError
from .router import LineRouter
from .types import Channel, ConnectivitySnapshot

logger = logging.getLogger("test_assistant.serial_link")

_IS_WINDOWS = platform.system() == "Windows"

# Map string parity values to pyserial constants
_PARITY_MAP = {
    "N": serial.PARITY_NONE,
    "E": serial.PARITY_EVEN,
    "O": serial.PARITY_ODD,
    "M": serial.PARITY_MARK,
    "S": serial.PARITY_SPACE,
}

_STOPBITS_MAP = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

_BYTESIZE_MAP = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}


def list_available_ports() -> List[str]:
    """Return ``"<device> - <description>"`` for every serial port the OS reports."""
    descriptions = []
    for p in serial.tools.list_ports.comports():
        descriptions.append(f"{p.device} - {p.description}")
        logger.debug("[SERIAL-LIST] Found port: %s (%s)", p.device, p.description)
    return descriptions


def _platform_hint() -> str:
    available = ", ".join(p.device for p in serial.tools.list_ports.comports())
    if _IS_WINDOWS:
        return (
            "On Windows: verify the COM port number in Device Manager "
            "(Ports -> COM & LPT) and that no other application (PuTTY, "
            "TeraTerm) has the port open. "
            f"Available ports: {available}."
        )
    return (
        "On Linux: verify the device path exists (ls /dev/ttyUSB* /dev/ttyACM* "
        "/dev/ttyS*), that your user is in the 'dialout' group and that no "
        "other process (minicom, screen, picocom) has the port open. "
        f"Available ports: {available}."
    )


def _write_all(ser: serial.Serial, data: bytes, port_name: str, context: str = "") -> int:
    """Write every byte of ``data`` and flush the OS transmit buffer.

    Does not catch pyserial exceptions; callers translate them.

    Raises:
        SerialCommunicationError: If fewer bytes were written than requested.
    """
    n = ser.write(data)
    if n != len(data):
        raise SerialCommunicationError(
            f"[{context}] Short write on {port_name}: "
            f"wrote {n}/{len(data)} bytes. "
            f"This usually means write_timeout is 0 (non-blocking) "
            f"and the kernel buffer is full."
        )
    ser.flush()
    logger.debug("[SERIAL-WRITE] [%s] Wrote %d bytes to %s", context, n, port_name)
    return n


@typechecked
class SerialLink:
    """One serial console feeding a ``LineRouter``.

    Example::

        router = LineRouter()
        link = SerialLink(Channel.BOOT, "/dev/ttyUSB0", router)
        link.open(context="bench start")
        link.send("A", context="answer prompt")
        ...
        link.close()
    """

    def __init__(
        self,
        channel: Channel,
        port: str,
        router: LineRouter,
        baud_rate: int = SERIAL_BAUD_RATE,
        bytesize: int = SERIAL_BYTESIZE,
        parity: str = SERIAL_PARITY,
        stopbits: int = SERIAL_STOPBITS,
        read_timeout: float = SERIAL_READ_TIMEOUT,
        write_timeout: Optional[float] = SERIAL_WRITE_TIMEOUT,
        poll_interval_s: float = SERIAL_POLL_INTERVAL_S,
        encoding: str = SERIAL_ENCODING,
    ) -> None:
        """Validate the line settings.  The port is not opened yet.

        Args:
            channel: ``Channel.MAIN`` or ``Channel.BOOT``.
            port: Serial port path, e.g. ``/dev/ttyUSB0`` or ``COM3``.
            router: Receives every raw chunk read from the port.
            baud_rate: Baud rate (default: 115200).
            bytesize: Data bits (5, 6, 7 or 8).
            parity: ``"N"``, ``"E"``, ``"O"``, ``"M"`` or ``"S"``.
            stopbits: Stop bits (1 or 2).
            read_timeout: Driver read timeout; 0 keeps reads non-blocking.
            write_timeout: Write timeout in seconds.  ``None`` blocks forever.
            poll_interval_s: Reader sleep when no bytes are waiting.
            encoding: Encoding used for outgoing text.

        Raises:
            SerialCommunicationError: If any parameter value is invalid.
        """
        if channel is Channel.NONE:
            raise SerialCommunicationError(
                f"Invalid channel {channel!r} for port {port}. Use Channel.MAIN or Channel.BOOT."
            )
        if bytesize not in _BYTESIZE_MAP:
            valid = ", ".join(str(k) for k in sorted(_BYTESIZE_MAP))
            raise SerialCommunicationError(
                f"Invalid bytesize {bytesize!r} for port {port}. Must be one of: {valid}."
            )
        if parity.upper() not in _PARITY_MAP:
            valid = ", ".join(f'"{k}"' for k in sorted(_PARITY_MAP))
            raise SerialCommunicationError(
                f"Invalid parity {parity!r} for port {port}. Must be one of: {valid}."
            )
        if stopbits not in _STOPBITS_MAP:
            valid = ", ".join(str(k) for k in sorted(_STOPBITS_MAP))
            raise SerialCommunicationError(
                f"Invalid stopbits {stopbits!r} for port {port}. Must be one of: {valid}."
            )
        if baud_rate <= 0:
            raise SerialCommunicationError(
                f"Invalid baud rate {baud_rate!r} for port {port}. "
                f"Common values: 9600, 19200, 38400, 57600, 115200."
            )
        if write_timeout is not None and write_timeout < 0:
            raise SerialCommunicationError(
                f"Invalid write_timeout {write_timeout!r} for port {port}. "
                f"Must be None (blocking), 0 (non-blocking), or a positive number."
            )

        self.channel = channel
        self.port = port
        self.router = router
        self.baud_rate = baud_rate
        self.bytesize = _BYTESIZE_MAP[bytesize]
        self.parity = _PARITY_MAP[parity.upper()]
        self.stopbits = _STOPBITS_MAP[stopbits]
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.poll_interval_s = poll_interval_s
        self.encoding = encoding
        self.bytes_received = 0

        self._serial: Optional[serial.Serial] = None
        self._reader: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._write_lock = threading.Lock()

        logger.info(
            "[SERIAL-INIT] %s configured on %s: %d %d%s%d (write_timeout=%s, poll=%.3fs)",
            channel.value, port, baud_rate, bytesize, parity.upper(), stopbits,
            f"{write_timeout:.2f}s" if write_timeout is not None else "None (blocking)",
            poll_interval_s,
        )

    # ---- Lifecycle ----

    def open(self, context: str) -> None:
        """Open the port and start the reader thread.

        Args:
            context: Description of the purpose, embedded into error messages.

        Raises:
            SerialCommunicationError: If the port cannot be opened.
        """
        if self.is_connected:
            logger.debug("[SERIAL-OPEN] [%s] %s already open, skipping", context, self.port)
            return

        logger.info(
            "[SERIAL-OPEN] [%s] Opening %s (%s) at %d baud ...",
            context, self.port, self.channel.value, self.baud_rate,
        )
        try:
            self._serial = serial.Serial(
                port=self.port,
                baudrate=self.baud_rate,
                bytesize=self.bytesize,
                parity=self.parity,
                stopbits=self.stopbits,
                timeout=self.read_timeout,
                write_timeout=self.write_timeout,
            )
        except serial.SerialException as exc:
            msg = (
                f"[{context}] Failed to open {self.channel.value} serial port {self.port} "
                f"at {self.baud_rate} baud: {exc}. {_platform_hint()}"
            )
            logger.error("[SERIAL-OPEN] FAILED: %s", msg)
            raise SerialCommunicationError(msg) from exc
        except OSError as exc:
            msg = (
                f"[{context}] OS error opening {self.channel.value} serial port "
                f"{self.port}: {exc}. {_platform_hint()}"
            )
            logger.error("[SERIAL-OPEN] OS ERROR: %s", msg)
            raise SerialCommunicationError(msg) from exc

        self._stop_event.clear()
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(self._serial,),
            name=f"serial-reader-{self.channel.value}",
            daemon=True,
        )
        self._reader.start()
        logger.info("[SERIAL-OPEN] [%s] %s is up on %s", context, self.channel.value, self.port)

    def close(self) -> None:
        """Stop the reader thread and close the port."""
        was_open = self._serial is not None
        self._stop_event.set()
        reader = self._reader
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=max(1.0, self.poll_interval_s * 10))
        self._reader = None

        if self._serial is not None:
            try:
                self._serial.close()
            except Exception as exc:
                logger.warning("[SERIAL-CLOSE] Error closing port %s: %s", self.port, exc)
            finally:
                self._serial = None

        if was_open:
            logger.info("[SERIAL-CLOSE] Closed %s (%s)", self.port, self.channel.value)

    def reconnect(self, context: str = "reconnect") -> bool:
        """Close and reopen the port.

        Returns:
            ``True`` if the link is up afterwards.

        Raises:
            SerialCommunicationError: If the port cannot be reopened.
        """
        logger.info("[SERIAL-RECONNECT] [%s] Reconnecting %s on %s", context, self.channel.value, self.port)
        self.close()
        self.open(context)
        return self.is_connected

    @property
    def is_connected(self) -> bool:
        """The port is open and its reader thread is alive."""
        ser = self._serial
        reader = self._reader
        return (
            ser is not None
            and ser.is_open
            and reader is not None
            and reader.is_alive()
        )

    # ---- I/O ----

    def send(self, text: str, context: str = "send") -> int:
        """Write ``text`` to the device.

        Returns:
            Number of bytes written.

        Raises:
            SerialCommunicationError: If the port is not open or the write fails.
            SerialTimeoutError: If the write did not finish within ``write_timeout``.
        """
        ser = self._serial
        if ser is None or not ser.is_open:
            msg = (
                f"[{context}] Cannot write to {self.channel.value} serial port {self.port}: "
                f"port is not open. Did you forget to call open()?"
            )
            logger.error("[SERIAL-WRITE] %s", msg)
            raise SerialCommunicationError(msg)

        data = text.encode(self.encoding)
        try:
            with self._write_lock:
                return _write_all(ser, data, self.port, context=context)
        except serial.SerialTimeoutException as exc:
            msg = (
                f"[{context}] Write to {self.port} timed out after {self.write_timeout}s "
                f"while sending {data!r}. The device may have stopped reading."
            )
            logger.error("[SERIAL-WRITE] TIMEOUT: %s", msg)
            raise SerialTimeoutError(msg) from exc
        except serial.SerialException as exc:
            msg = (
                f"[{context}] Failed to write to {self.channel.value} serial port "
                f"{self.port}: {exc}. Attempted to send {len(data)} bytes: {data!r}. "
                f"The device may have been disconnected."
            )
            logger.error("[SERIAL-WRITE] WRITE ERROR: %s", msg)
            raise SerialCommunicationError(msg) from exc
        except OSError as exc:
            msg = (
                f"[{context}] OS error writing to {self.channel.value} serial port "
                f"{self.port}: {exc}. The device may have been physically removed."
            )
            logger.error("[SERIAL-WRITE] OS WRITE ERROR: %s", msg)
            raise SerialCommunicationError(msg) from exc

    def _read_loop(self, ser: serial.Serial) -> None:
        """Poll the port until stopped or the device goes away."""
        while not self._stop_event.is_set():
            try:
                waiting = ser.in_waiting
                chunk = ser.read(waiting) if waiting > 0 else b""
            except (serial.SerialException, OSError) as exc:
                if not self._stop_event.is_set():
                    logger.error(
                        "[SERIAL-READ] %s read error on %s: %s. Link marked down.",
                        self.channel.value, self.port, exc,
                    )
                return
            except TypeError:
                # pyserial raises this when the port is closed under a pending read
                return

            if chunk:
                self.bytes_received += len(chunk)
                self.router.deliver(self.channel, chunk)
                logger.debug(
                    "[SERIAL-READ] +%d bytes from %s (total %d)",
                    len(chunk), self.port, self.bytes_received,
                )
            else:
                time.sleep(self.poll_interval_s)

    # ---- Context manager ----

    def __enter__(self) -> SerialLink:
        self.open(context=f"Opening {self.port}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()


@typechecked
class DualChannelTransport:
    """The MAIN and BOOT links of one board, sharing one ``LineRouter``."""

    def __init__(
        self,
        router: LineRouter,
        main_port: str = DEFAULT_MAIN_PORT,
        boot_port: str = DEFAULT_BOOT_PORT,
        baud_rate: int = SERIAL_BAUD_RATE,
        poll_interval_s: float = SERIAL_POLL_INTERVAL_S,
    ) -> None:
        self.router = router
        self.links: Dict[Channel, SerialLink] = {
            Channel.MAIN: SerialLink(
                Channel.MAIN, main_port, router, baud_rate=baud_rate, poll_interval_s=poll_interval_s,
            ),
            Channel.BOOT: SerialLink(
                Channel.BOOT, boot_port, router, baud_rate=baud_rate, poll_interval_s=poll_interval_s,
            ),
        }

    def open(self, context: str) -> ConnectivitySnapshot:
        """Try to open both links.

        A link that fails to open is logged and left down; link-gated
        instructions decide what that means for the test.

        Returns:
            Link state after the attempt.
        """
        for link in self.links.values():
            try:
                link.open(context)
            except SerialCommunicationError as exc:
                logger.warning("[TRANSPORT] %s link is down: %s", link.channel.value, exc)
        return self.connectivity()

    def close(self) -> None:
        for link in self.links.values():
            link.close()

    def send(self, channel: Channel, text: str) -> None:
        """Write ``text`` on ``channel``.

        Raises:
            SerialCommunicationError: If the channel is unknown or the write fails.
        """
        link = self.links.get(channel)
        if link is None:
            raise SerialCommunicationError(
                f"Cannot send {text!r}: no serial link for channel {channel.value}."
            )
        link.send(text, context=f"send to {channel.value}")

    def connectivity(self) -> ConnectivitySnapshot:
        return ConnectivitySnapshot(
            main_connected=self.links[Channel.MAIN].is_connected,
            boot_connected=self.links[Channel.BOOT].is_connected,
        )

    def swap_ports(self) -> ConnectivitySnapshot:
        """Exchange the MAIN and BOOT port paths and reopen both links.

        Used when the consoles turn out to be cabled the wrong way round.

        Returns:
            Link state after reopening.
        """
        main = self.links[Channel.MAIN]
        boot = self.links[Channel.BOOT]
        main.close()
        boot.close()
        main.port, boot.port = boot.port, main.port
        logger.warning(
            "[TRANSPORT] Consoles swapped: MAIN is now %s, BOOT is now %s", main.port, boot.port,
        )
        return self.open(context="swap consoles")

    def reconnect(self, channel: Channel) -> bool:
        """Reopen one link.

        Raises:
            SerialCommunicationError: If the link cannot be reopened.
        """
        link = self.links.get(channel)
        if link is None:
            return False
        return link.reconnect(context=f"reconnect {channel.value}")

    def __enter__(self) -> DualChannelTransport:
        self.open(context="Opening board consoles")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        self.close()
