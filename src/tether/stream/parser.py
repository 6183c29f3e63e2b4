"""Incremental stream-json parser for generator stdout.

Turns an unbounded byte stream (one JSON object per line, arbitrary chunk
boundaries) into normalized lifecycle events.

The generator's ``--output-format stream-json --verbose
--include-partial-messages`` mode emits these top-level event types:

* ``system``       — ``init`` carries the authoritative session id;
  ``status`` carries permission-mode changes (plan mode).
* ``stream_event`` — raw model API events (``content_block_start`` /
  ``_delta`` / ``_stop``, ``message_*``), optionally tagged with a
  ``parent_tool_use_id`` when emitted by a delegated sub-task.
* ``assistant``    — complete assistant messages; only used here for
  sub-task progress.
* ``user``         — tool results fed back to the model, correlated to
  the invoking tool by ``tool_use_id``.
* ``result``       — final aggregated metrics for the turn.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from tether.stream.events import (
    LifecycleEvent,
    PlanModeEntered,
    PlanUpdated,
    QuestionAsked,
    SessionIdentified,
    StatusChanged,
    SubTaskFinished,
    SubTaskProgress,
    SubTaskStarted,
    TextDelta,
    ThinkingResolved,
    ToolFinished,
    ToolInputFragment,
    ToolStarted,
    TurnMetrics,
    TurnResult,
    UnknownEvent,
)
from tether.stream.tools import (
    DELEGATION_TOOL,
    HIDDEN_TOOLS,
    MAX_OUTPUT_LEN,
    PLAN_ENTER_TOOL,
    PLAN_EXIT_TOOL,
    QUESTION_TOOL,
    extract_tool_output,
    fetch_sources,
    progress_phrase,
    render_question,
    search_sources,
    status_phrase,
    sub_task_detail,
    tool_title,
)

logger = logging.getLogger(__name__)

#: Maximum characters buffered for a single incomplete line (1 MB).
_MAX_LINE_CHARS = 1_048_576

#: Characters of a bad line included in the log entry.
_LOG_PREVIEW_LEN = 200

DisplayMode = Literal["plan", "timeline"]


class LineBuffer:
    """Split a chunked byte stream into complete text lines.

    Multi-byte UTF-8 sequences may straddle chunk boundaries; an
    incremental decoder holds partial sequences until they complete.
    """

    def __init__(self, max_line_chars: int = _MAX_LINE_CHARS) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._max_line_chars = max_line_chars

    @property
    def pending(self) -> str:
        """The incomplete trailing fragment held for the next chunk."""
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        """Add *chunk* and return every line it completed."""
        self._pending += self._decoder.decode(chunk)
        *lines, self._pending = self._pending.split("\n")
        if len(self._pending) > self._max_line_chars:
            logger.warning(
                "stdout line exceeds %d chars without a newline, dropping",
                self._max_line_chars,
            )
            self._pending = ""
        return lines

    def flush(self) -> list[str]:
        """Return the trailing fragment at end of stream, if any."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return [tail] if tail.strip() else []


@dataclass
class OpenTool:
    """A tool invocation whose content block has not stopped yet."""

    name: str
    task_id: str
    tool_use_id: str
    fragments: list[str] = field(default_factory=list)

    @property
    def raw_input(self) -> str:
        return "".join(self.fragments)


@dataclass
class OpenSubTask:
    """A delegated sub-task awaiting its result."""

    description: str
    task_id: str


@dataclass
class CompletedTool:
    """A finished tool whose separate result may still update its card."""

    task_id: str
    name: str
    title: str


@dataclass
class _OpenBlock:
    kind: str
    text: str = ""


def _parse_input(raw: str) -> dict[str, Any]:
    """Parse accumulated tool input, falling back to an empty object."""
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def _as_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError, OverflowError):
        return 0.0


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


class StreamParser:
    """Event state machine over the generator's stream-json output.

    Tracks open content blocks and tool invocations (keyed by block
    index), open delegated sub-tasks and completed tools (both keyed by
    the external tool-use id), and emits normalized lifecycle events.
    """

    def __init__(self, label: str = "", max_output_len: int = MAX_OUTPUT_LEN) -> None:
        self._label = label or "stream"
        self._max_output_len = max_output_len
        self._buffer = LineBuffer()

        self._blocks: dict[int, _OpenBlock] = {}
        self._tools: dict[int, OpenTool] = {}
        self._sub_tasks: dict[str, OpenSubTask] = {}
        self._completed: dict[str, CompletedTool] = {}
        self._task_counter = 0

        self._text_parts: list[str] = []
        self._display_mode: DisplayMode | None = None
        self._plan_mode = False
        self._thinking_resolved = False
        self._session_token: str | None = None
        self._model: str | None = None
        self._result: TurnMetrics | None = None
        self._skipped_lines = 0

    # ------------------------------------------------------------------ #
    # Public state
    # ------------------------------------------------------------------ #

    @property
    def accumulated_text(self) -> str:
        """All visible text produced so far."""
        return "".join(self._text_parts)

    @property
    def display_mode(self) -> DisplayMode | None:
        """Rendering mode decided by the first non-thinking content block."""
        return self._display_mode

    @property
    def plan_mode(self) -> bool:
        return self._plan_mode

    @property
    def session_token(self) -> str | None:
        """Session id reported by the generator's init event."""
        return self._session_token

    @property
    def result(self) -> TurnMetrics | None:
        """Metrics of the final result event, if it arrived."""
        return self._result

    @property
    def skipped_lines(self) -> int:
        """Number of malformed lines skipped."""
        return self._skipped_lines

    @property
    def open_tools(self) -> Mapping[int, OpenTool]:
        return self._tools

    @property
    def open_sub_tasks(self) -> Mapping[str, OpenSubTask]:
        return self._sub_tasks

    @property
    def completed_tools(self) -> Mapping[str, CompletedTool]:
        return self._completed

    # ------------------------------------------------------------------ #
    # Feeding
    # ------------------------------------------------------------------ #

    def feed(self, chunk: bytes) -> list[LifecycleEvent]:
        """Process a raw stdout chunk and return the events it completed."""
        events: list[LifecycleEvent] = []
        for line in self._buffer.feed(chunk):
            events.extend(self.process_line(line))
        return events

    def finish(self) -> list[LifecycleEvent]:
        """Flush the trailing line and close sub-tasks still open at exit."""
        events: list[LifecycleEvent] = []
        for line in self._buffer.flush():
            events.extend(self.process_line(line))
        for parent_id, sub in self._sub_tasks.items():
            events.append(
                SubTaskFinished(
                    parent_id=parent_id,
                    task_id=sub.task_id,
                    description=sub.description,
                )
            )
        self._sub_tasks.clear()
        return events

    def process_line(self, line: str) -> list[LifecycleEvent]:
        """Decode one complete line. Malformed lines are logged and skipped."""
        line = line.strip()
        if not line:
            return []
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            self._skipped_lines += 1
            logger.warning(
                "%s: failed to parse stream line (%s): %s",
                self._label,
                exc.msg,
                line[:_LOG_PREVIEW_LEN],
            )
            return []
        if not isinstance(data, dict):
            self._skipped_lines += 1
            logger.warning(
                "%s: stream line is not a JSON object: %s",
                self._label,
                line[:_LOG_PREVIEW_LEN],
            )
            return []
        try:
            return self.handle(data)
        except Exception:
            self._skipped_lines += 1
            logger.exception(
                "%s: failed to handle stream line: %s",
                self._label,
                line[:_LOG_PREVIEW_LEN],
            )
            return []

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def handle(self, data: dict[str, Any]) -> list[LifecycleEvent]:
        """Dispatch one decoded event object."""
        event_type = data.get("type")

        if event_type == "system":
            return self._on_system(data)
        if event_type == "stream_event":
            return self._on_stream_event(data)
        if event_type == "assistant":
            return self._on_assistant(data)
        if event_type == "user":
            return self._on_user(data)
        if event_type == "result":
            return self._on_result(data)

        logger.debug("%s: unknown stream type=%s", self._label, event_type)
        return [UnknownEvent(raw_type=str(event_type or ""))]

    def _on_system(self, data: dict[str, Any]) -> list[LifecycleEvent]:
        subtype = data.get("subtype")
        if subtype == "init":
            model = data.get("model")
            if isinstance(model, str) and model:
                self._model = model
            token = data.get("session_id")
            if isinstance(token, str) and token:
                logger.info(
                    "%s: session id reported: %s -> %s",
                    self._label,
                    self._session_token,
                    token,
                )
                self._session_token = token
                return [SessionIdentified(token=token)]
        elif subtype == "status":
            mode = data.get("permissionMode")
            if mode == "plan" and not self._plan_mode:
                self._plan_mode = True
                logger.info("%s: plan mode activated", self._label)
            elif self._plan_mode and mode is not None and mode != "plan":
                self._plan_mode = False
                logger.info("%s: plan mode deactivated (%s)", self._label, mode)
        return []

    def _on_stream_event(self, data: dict[str, Any]) -> list[LifecycleEvent]:
        evt = _as_dict(data.get("event"))
        parent_id = data.get("parent_tool_use_id")

        # Sub-task stream events only update the delegating task's card.
        if isinstance(parent_id, str) and parent_id in self._sub_tasks:
            block = _as_dict(evt.get("content_block"))
            if evt.get("type") == "content_block_start" and block.get("type") == "tool_use":
                sub = self._sub_tasks[parent_id]
                return [
                    SubTaskProgress(
                        parent_id=parent_id,
                        task_id=sub.task_id,
                        description=sub.description,
                        detail=progress_phrase(str(block.get("name", ""))),
                    )
                ]
            return []

        evt_type = evt.get("type")
        index = evt.get("index")
        if evt_type in ("content_block_start", "content_block_delta", "content_block_stop"):
            if not isinstance(index, int):
                logger.warning(
                    "%s: %s without a block index, skipping", self._label, evt_type
                )
                return []
            if evt_type == "content_block_start":
                return self._on_block_start(index, _as_dict(evt.get("content_block")))
            if evt_type == "content_block_delta":
                return self._on_block_delta(index, _as_dict(evt.get("delta")))
            return self._on_block_stop(index)

        logger.debug("%s: stream_event type=%s", self._label, evt_type)
        return []

    def _resolve_thinking(self, events: list[LifecycleEvent]) -> None:
        if self._display_mode is None:
            self._display_mode = "timeline"
        if not self._thinking_resolved:
            self._thinking_resolved = True
            events.append(ThinkingResolved())

    def _idle_status(self) -> str:
        return "is planning..." if self._plan_mode else "is thinking..."

    def _on_block_start(self, index: int, block: dict[str, Any]) -> list[LifecycleEvent]:
        events: list[LifecycleEvent] = []
        block_type = str(block.get("type", ""))
        name = str(block.get("name", ""))

        # Plan mode must be decided before any other rendering happens.
        if (
            block_type == "tool_use"
            and name == PLAN_ENTER_TOOL
            and self._display_mode is None
        ):
            self._display_mode = "plan"
            self._plan_mode = True
            events.append(PlanModeEntered(title="Planning..."))

        if block_type == "thinking":
            events.append(StatusChanged(status=self._idle_status()))
        else:
            self._resolve_thinking(events)

        text = block.get("text")
        self._blocks[index] = _OpenBlock(
            kind=block_type, text=text if isinstance(text, str) else ""
        )

        if block_type == "tool_use":
            self._task_counter += 1
            tool = OpenTool(
                name=name,
                task_id=f"task_{self._task_counter}",
                tool_use_id=str(block.get("id") or ""),
            )
            self._tools[index] = tool
            phrase = status_phrase(name)
            logger.info(
                "%s: tool start: %s (index=%d, task=%s, tool_use_id=%s)",
                self._label,
                name,
                index,
                tool.task_id,
                tool.tool_use_id,
            )
            events.append(
                ToolStarted(
                    index=index,
                    task_id=tool.task_id,
                    name=name,
                    tool_use_id=tool.tool_use_id,
                    hidden=name in HIDDEN_TOOLS,
                    status_phrase=phrase,
                )
            )
            events.append(StatusChanged(status=phrase))

        return events

    def _on_block_delta(self, index: int, delta: dict[str, Any]) -> list[LifecycleEvent]:
        delta_type = delta.get("type")

        if delta_type == "text_delta":
            text = delta.get("text")
            if not isinstance(text, str) or not text:
                return []
            events: list[LifecycleEvent] = []
            self._resolve_thinking(events)
            self._text_parts.append(text)
            block = self._blocks.get(index)
            if block is not None:
                block.text += text
            events.append(TextDelta(text=text))
            return events

        if delta_type == "input_json_delta":
            tool = self._tools.get(index)
            fragment = delta.get("partial_json")
            if tool is None or not isinstance(fragment, str) or not fragment:
                return []
            tool.fragments.append(fragment)
            return [ToolInputFragment(index=index, fragment=fragment)]

        return []

    def _on_block_stop(self, index: int) -> list[LifecycleEvent]:
        self._blocks.pop(index, None)
        tool = self._tools.pop(index, None)
        if tool is None:
            return []

        parsed = _parse_input(tool.raw_input)
        title = tool_title(tool.name, parsed)
        logger.info("%s: tool complete: %s -> %r", self._label, tool.name, title)
        events: list[LifecycleEvent] = []

        if tool.name == QUESTION_TOOL:
            markdown = render_question(parsed)
            if markdown:
                events.append(QuestionAsked(markdown=markdown))
            events.append(
                ToolFinished(
                    index=index,
                    task_id=tool.task_id,
                    name=tool.name,
                    title=title,
                    input=parsed,
                )
            )
        elif tool.name == DELEGATION_TOOL:
            # Completes only when the delegation's own result arrives.
            self._sub_tasks[tool.tool_use_id] = OpenSubTask(
                description=title, task_id=tool.task_id
            )
            logger.info(
                "%s: sub-task registered: tool_use_id=%s %r",
                self._label,
                tool.tool_use_id,
                title,
            )
            events.append(
                SubTaskStarted(
                    parent_id=tool.tool_use_id,
                    task_id=tool.task_id,
                    description=title,
                )
            )
        elif tool.name in HIDDEN_TOOLS:
            events.append(
                ToolFinished(
                    index=index,
                    task_id=tool.task_id,
                    name=tool.name,
                    title=title,
                    input=parsed,
                    hidden=True,
                )
            )
            if tool.name == PLAN_EXIT_TOOL and self._display_mode == "plan":
                events.append(PlanUpdated(title="Plan ready"))
        else:
            sources = fetch_sources(parsed) if tool.name == "WebFetch" else ()
            events.append(
                ToolFinished(
                    index=index,
                    task_id=tool.task_id,
                    name=tool.name,
                    title=title,
                    input=parsed,
                    sources=sources,
                )
            )
            if tool.tool_use_id:
                self._completed[tool.tool_use_id] = CompletedTool(
                    task_id=tool.task_id, name=tool.name, title=title
                )

        events.append(StatusChanged(status=self._idle_status()))
        return events

    def _on_assistant(self, data: dict[str, Any]) -> list[LifecycleEvent]:
        parent_id = data.get("parent_tool_use_id")
        if not isinstance(parent_id, str) or parent_id not in self._sub_tasks:
            return []

        message = _as_dict(data.get("message"))
        tool_calls = [
            block
            for block in _as_list(message.get("content"))
            if isinstance(block, dict) and block.get("type") == "tool_use"
        ]
        if not tool_calls:
            return []

        last = tool_calls[-1]
        sub = self._sub_tasks[parent_id]
        return [
            SubTaskProgress(
                parent_id=parent_id,
                task_id=sub.task_id,
                description=sub.description,
                detail=sub_task_detail(str(last.get("name", "")), last.get("input")),
            )
        ]

    def _on_user(self, data: dict[str, Any]) -> list[LifecycleEvent]:
        # Nested results (sub-task prompts and tool results) only get logged.
        if data.get("parent_tool_use_id"):
            logger.debug(
                "%s: nested user message (parent=%s)",
                self._label,
                data.get("parent_tool_use_id"),
            )
            return []

        message = _as_dict(data.get("message"))
        content = _as_list(message.get("content"))
        first = _as_dict(content[0]) if content else {}
        tool_use_id = first.get("tool_use_id")
        summary = data.get("tool_use_result")
        if not isinstance(tool_use_id, str) or not tool_use_id:
            return []

        sub = self._sub_tasks.pop(tool_use_id, None)
        if sub is not None:
            logger.info("%s: sub-task completed: %s", self._label, sub.description)
            return [
                SubTaskFinished(
                    parent_id=tool_use_id,
                    task_id=sub.task_id,
                    description=sub.description,
                    output=extract_tool_output(summary, first, self._max_output_len),
                )
            ]

        completed = self._completed.pop(tool_use_id, None)
        if completed is None:
            logger.debug("%s: untracked tool result %s", self._label, tool_use_id)
            return []

        is_error = first.get("is_error") is True
        output = extract_tool_output(summary, first, self._max_output_len)
        sources = search_sources(first) if completed.name == "WebSearch" else ()
        if not (is_error or output or sources):
            return []
        return [
            ToolFinished(
                task_id=completed.task_id,
                name=completed.name,
                title=completed.title,
                status="error" if is_error else "complete",
                output=output,
                sources=sources,
            )
        ]

    def _on_result(self, data: dict[str, Any]) -> list[LifecycleEvent]:
        usage = _as_dict(data.get("usage"))
        model = data.get("model")
        session_id = data.get("session_id")
        result = data.get("result")
        metrics = TurnMetrics(
            success=data.get("is_error") is not True,
            cost_usd=_as_float(data.get("total_cost_usd")),
            duration_ms=_as_int(data.get("duration_ms")),
            num_turns=_as_int(data.get("num_turns")),
            model=model if isinstance(model, str) and model else self._model,
            input_tokens=_as_int(usage.get("input_tokens", data.get("input_tokens"))),
            output_tokens=_as_int(usage.get("output_tokens", data.get("output_tokens"))),
            session_id=session_id if isinstance(session_id, str) else None,
            subtype=str(data["subtype"]) if data.get("subtype") else None,
            result=result if isinstance(result, str) else None,
        )
        self._result = metrics
        logger.info(
            "%s: result subtype=%s success=%s duration_ms=%d turns=%d cost=$%.4f",
            self._label,
            metrics.subtype,
            metrics.success,
            metrics.duration_ms,
            metrics.num_turns,
            metrics.cost_usd,
        )
        if not metrics.success and data.get("result"):
            logger.error("%s: result error detail: %s", self._label, data.get("result"))
        return [TurnResult(metrics=metrics)]
