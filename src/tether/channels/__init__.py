"""Channel implementations the orchestrator can render turns onto."""

from tether.channels.console import (
    ConsoleLiveChannel,
    ConsoleSnapshotChannel,
    console_channels,
    echo_notice,
    echo_status,
)

__all__ = [
    "ConsoleLiveChannel",
    "ConsoleSnapshotChannel",
    "console_channels",
    "echo_notice",
    "echo_status",
]
