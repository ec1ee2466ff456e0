"""
Test Assistant - scripted hardware-acceptance tests over dual serial consoles

This package drives acceptance tests against a board that exposes two
independent serial consoles, one per processor (MAIN and BOOT). It includes:

- **Line reassembly** of fragmented serial output into clean text lines
- **Bounded channel buffers** with one-shot suppression of consumed evidence
- **Instruction sequencing** that matches each scripted step against the
  buffers, with numeric range checks, occurrence counting and timing
- **Attempt policy** that retries a failed test a bounded number of times
- **Serial transport** built on pyserial with a queue-backed line router

The engine is pull-based: an external tick driver calls ``evaluate()`` on the
active test run at its own cadence.
"""

import logging
import os

logging.getLogger("test_assistant").addHandler(logging.NullHandler())

__version__ = "0.1.0"

# Default serial device paths for the two processor consoles.
# Override via environment variables:
#   TEST_ASSISTANT_MAIN_PORT / TEST_ASSISTANT_BOOT_PORT
DEFAULT_MAIN_PORT = os.environ.get("TEST_ASSISTANT_MAIN_PORT", "/dev/ttyUSB1")
DEFAULT_BOOT_PORT = os.environ.get("TEST_ASSISTANT_BOOT_PORT", "/dev/ttyUSB0")

# Directory that receives exported terminal logs (one file per test/channel).
DEFAULT_LOG_DIR = os.environ.get(
    "TEST_ASSISTANT_LOG_DIR",
    os.path.join(os.path.expanduser("~"), "Test_Assistant", "TestLogs"),
)

# Serial communication settings
SERIAL_BAUD_RATE = 115200
SERIAL_BYTESIZE = 8       # 8 data bits
SERIAL_PARITY = "N"       # No parity
SERIAL_STOPBITS = 1       # 1 stop bit
SERIAL_READ_TIMEOUT = 0  # seconds; non-blocking, the poll loop owns timing
SERIAL_WRITE_TIMEOUT = 10  # seconds
SERIAL_POLL_INTERVAL_S = 0.01  # reader thread sleep granularity when the line is idle
SERIAL_ENCODING = "utf-8"

# Engine settings
BUFFER_CAPACITY = 256       # lines of history kept per channel
MISMATCH_MARKER = "(MISMATCH)"
MISMATCH_THRESHOLD = 64     # run fails once the count goes above this
ERROR_MARKERS = ("Error", "ERROR")
MAX_TEST_ATTEMPTS = 3
MAX_RECONNECT_ATTEMPTS = 3
TICK_INTERVAL_S = 1.0
POWER_ON_TIMEOUT_S = 5.0

# A MAIN console whose first lines carry the BOOT banner is cabled backwards
SWAP_MARKER = "BOOT processor"
SWAP_WINDOW_LINES = 5
