"""Shared constants and type aliases for the tether runtime."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

#: Sentinel token stored until the generation process reports its own id.
PENDING_TOKEN = "pending"

#: Callback type for user-visible notices (busy, no directory, failures).
NoticeCallback = Callable[[str], Awaitable[None]]

#: Callback type for status-bar updates ("is reading files...").
StatusCallback = Callable[[str], Awaitable[None]]

#: Rendered text shown when a turn is stopped by the user.
STOPPED_MARKER = "_Stopped by user._"

#: Rendered text shown when a turn produced nothing and exited cleanly.
NO_RESPONSE_TEXT = "No response."

#: Rendered text shown when a turn produced nothing and failed.
FAILURE_TEXT = "Something went wrong."

#: Notice posted when a second turn arrives while one is active.
BUSY_TEXT = "Still processing the previous message..."

#: Notice posted when no working directory can be resolved for a thread.
NO_DIRECTORY_TEXT = "No working directory set. Send `$cwd /path/to/dir` to set one."
