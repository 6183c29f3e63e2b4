"""Stream handling — event models, incremental parser, and output sink."""

from tether.stream.events import (
    LifecycleEvent,
    SessionIdentified,
    SubTaskFinished,
    TextDelta,
    ToolFinished,
    ToolStarted,
    TurnMetrics,
    TurnResult,
    UnknownEvent,
)
from tether.stream.parser import LineBuffer, StreamParser
from tether.stream.sink import (
    FinalContent,
    LiveChannel,
    MarkdownChunk,
    PlanChunk,
    SnapshotChannel,
    StreamSink,
    TaskChunk,
    TurnOutcome,
)

__all__ = [
    "FinalContent",
    "LifecycleEvent",
    "LineBuffer",
    "LiveChannel",
    "MarkdownChunk",
    "PlanChunk",
    "SessionIdentified",
    "SnapshotChannel",
    "StreamParser",
    "StreamSink",
    "SubTaskFinished",
    "TaskChunk",
    "TextDelta",
    "ToolFinished",
    "ToolStarted",
    "TurnMetrics",
    "TurnOutcome",
    "TurnResult",
    "UnknownEvent",
]
