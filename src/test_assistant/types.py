"""Type definitions for Test Assistant."""

import dataclasses
import enum
from typing import Callable, Dict, Tuple


class Channel(enum.Enum):
    """Serial console a line came from, or an instruction consults."""
    NONE = "NONE"
    MAIN = "MAIN"
    BOOT = "BOOT"


@dataclasses.dataclass(frozen=True)
class ConnectivitySnapshot:
    """Link-up state of both consoles at one instant."""
    main_connected: bool = False
    boot_connected: bool = False

    def is_connected(self, channel: Channel) -> bool:
        if channel is Channel.MAIN:
            return self.main_connected
        if channel is Channel.BOOT:
            return self.boot_connected
        return False


# Transport output: send(channel, text)
SendFunction = Callable[[Channel, str], None]

# Reconnect side effect: returns True when the link came back up
ReconnectFunction = Callable[[Channel], bool]

# Supplies the current link state when evaluate() is not given one
ConnectivityProvider = Callable[[], ConnectivitySnapshot]

# Monotonic clock in seconds
Clock = Callable[[], float]

# Per-test-point row: (test_name, expected_output, actual_output, verdict, attempt_number)
OutcomeRow = Tuple[str, str, str, str, int]

# Exported terminal log paths keyed by channel name
LogPaths = Dict[str, str]
