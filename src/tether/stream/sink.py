"""Output multiplexer: applies lifecycle events to an outbound channel.

The sink starts optimistically on a :class:`LiveChannel` (create, append
chunks, seal). The first failure of any live operation permanently flips
the turn to a :class:`SnapshotChannel`, which overwrites a single message
with the full accumulated text at most once per ``update_interval``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict, Field

from tether.constants import (
    FAILURE_TEXT,
    NO_RESPONSE_TEXT,
    STOPPED_MARKER,
    StatusCallback,
)
from tether.stream.events import (
    LifecycleEvent,
    PlanModeEntered,
    PlanUpdated,
    QuestionAsked,
    Source,
    StatusChanged,
    SubTaskFinished,
    SubTaskProgress,
    SubTaskStarted,
    TaskStatus,
    TextDelta,
    ThinkingResolved,
    ToolFinished,
    ToolStarted,
    TurnMetrics,
)

logger = logging.getLogger(__name__)

RenderMode = Literal["plan", "timeline"]

#: Task id of the synthetic "Thinking" card shown in timeline mode.
THINKING_TASK_ID = "thinking"


class MarkdownChunk(BaseModel):
    """Visible markdown appended to the live message."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["markdown"] = "markdown"
    text: str


class TaskChunk(BaseModel):
    """Create or update one task card, keyed by ``id``."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["task"] = "task"
    id: str
    title: str
    status: TaskStatus
    details: str | None = None
    output: str | None = None
    sources: tuple[Source, ...] = ()


class PlanChunk(BaseModel):
    """Set the plan title (plan display mode)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["plan"] = "plan"
    title: str


RenderChunk = Annotated[
    MarkdownChunk | TaskChunk | PlanChunk, Field(discriminator="type")
]


class FinalContent(BaseModel):
    """What a live message is sealed with."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    text: str = Field(description="Full visible text of the turn")
    stopped: bool = Field(default=False, description="Turn was cancelled")


class LiveChannel(Protocol):
    """Incremental channel: create a message, append chunks, seal it."""

    async def create(self, mode: RenderMode) -> Any: ...

    async def append(self, handle: Any, chunk: RenderChunk) -> None: ...

    async def seal(self, handle: Any, final: FinalContent) -> None: ...


class SnapshotChannel(Protocol):
    """Fallback channel: overwrite one message with the full text."""

    async def post_control(self) -> Any:
        """Post the message carrying the cancel affordance, return its ref."""
        ...

    async def upsert(self, ref: Any | None, text: str, *, final: bool) -> Any:
        """Overwrite *ref* (or post anew when ``None``) and return the ref."""
        ...

    async def delete(self, ref: Any) -> None: ...


@dataclass(frozen=True)
class TurnOutcome:
    """How a turn ended.

    ``exit_code`` is ``None`` when the process never started.
    """

    stopped: bool = False
    exit_code: int | None = 0
    metrics: TurnMetrics | None = None
    final_text: str = ""

    @property
    def failed(self) -> bool:
        return not self.stopped and self.exit_code != 0


def placeholder_text(outcome: TurnOutcome) -> str:
    """Single message used when a turn produced no visible text."""
    if outcome.stopped:
        return STOPPED_MARKER
    if outcome.failed:
        return FAILURE_TEXT
    return NO_RESPONSE_TEXT


class StreamSink:
    """Serialize lifecycle events onto the live or snapshot channel.

    ``append`` only enqueues; a single consumer task applies events in
    order, so no two channel operations ever overlap.
    """

    def __init__(
        self,
        live: LiveChannel | None,
        snapshot: SnapshotChannel,
        *,
        update_interval: float = 0.75,
        clock: Callable[[], float] = time.monotonic,
        on_status: StatusCallback | None = None,
        label: str = "",
    ) -> None:
        self._live = live
        self._snapshot = snapshot
        self._update_interval = update_interval
        self._clock = clock
        self._on_status = on_status
        self._label = label or "sink"

        self._queue: asyncio.Queue[LifecycleEvent | None] = asyncio.Queue()
        self._consumer: asyncio.Task[None] | None = None
        self._finalized = False

        self._fallback = live is None
        self._handle: Any = None
        self._handle_created = False
        self._live_active = False
        self._mode: RenderMode | None = None
        self._thinking_done = False

        self._text_parts: list[str] = []
        self._control_ref: Any = None
        self._control_posted = False
        self._last_update: float | None = None
        self._snapshot_updates = 0

    # ------------------------------------------------------------------ #
    # Public state
    # ------------------------------------------------------------------ #

    @property
    def text(self) -> str:
        """Accumulated visible answer text."""
        return "".join(self._text_parts)

    @property
    def using_fallback(self) -> bool:
        return self._fallback

    @property
    def mode(self) -> RenderMode | None:
        return self._mode

    @property
    def live_active(self) -> bool:
        """Whether at least one chunk reached the live channel."""
        return self._live_active

    @property
    def snapshot_updates(self) -> int:
        return self._snapshot_updates

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def append(self, event: LifecycleEvent) -> None:
        """Enqueue *event*; it is applied after all earlier events."""
        if self._finalized:
            logger.warning(
                "%s: event %s after finalize, dropping", self._label, event.type
            )
            return
        self._queue.put_nowait(event)
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())

    async def finalize(self, outcome: TurnOutcome) -> str:
        """Drain pending events, seal the output, and return the final text."""
        self._finalized = True
        if self._consumer is not None:
            self._queue.put_nowait(None)
            await self._consumer

        logger.info(
            "%s: finalize: fallback=%s live_active=%s mode=%s stopped=%s exit=%s",
            self._label,
            self._fallback,
            self._live_active,
            self._mode,
            outcome.stopped,
            outcome.exit_code,
        )
        if not self._fallback and self._live_active:
            return await self._finalize_live(outcome)
        if self._handle_created and not self._live_active and not self.text:
            return await self._finalize_empty(outcome)
        return await self._finalize_snapshot(outcome)

    # ------------------------------------------------------------------ #
    # Event application
    # ------------------------------------------------------------------ #

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            try:
                await self._apply(event)
            except Exception:
                logger.exception("%s: failed to apply %s", self._label, event.type)

    async def _apply(self, event: LifecycleEvent) -> None:
        match event:
            case StatusChanged(status=status):
                await self._notify_status(status)
            case PlanModeEntered(title=title):
                await self._push(PlanChunk(title=title), mode="plan")
            case PlanUpdated(title=title):
                await self._push(PlanChunk(title=title))
            case ThinkingResolved():
                await self._resolve_thinking()
            case TextDelta(text=text):
                self._text_parts.append(text)
                if self._fallback:
                    await self._snapshot_update()
                else:
                    await self._push(MarkdownChunk(text=text))
            case QuestionAsked(markdown=markdown):
                await self._push(MarkdownChunk(text=markdown))
            case ToolStarted(hidden=False, task_id=task_id, name=name):
                await self._push(
                    TaskChunk(id=task_id, title=f"Using {name}...", status="in_progress")
                )
            case ToolFinished(hidden=False):
                await self._push(
                    TaskChunk(
                        id=event.task_id,
                        title=event.title,
                        status=event.status,
                        output=event.output,
                        sources=event.sources,
                    )
                )
            case SubTaskStarted(task_id=task_id, description=description):
                await self._push(
                    TaskChunk(id=task_id, title=description, status="in_progress")
                )
            case SubTaskProgress():
                await self._push(
                    TaskChunk(
                        id=event.task_id,
                        title=event.description,
                        status="in_progress",
                        details=event.detail,
                    )
                )
            case SubTaskFinished():
                await self._push(
                    TaskChunk(
                        id=event.task_id,
                        title=event.description,
                        status="complete",
                        output=event.output,
                    )
                )
            case _:
                # Input fragments, results, session ids and hidden tools.
                pass

    async def _notify_status(self, status: str) -> None:
        if self._on_status is None:
            return
        try:
            await self._on_status(status)
        except Exception as exc:
            logger.warning("%s: status update failed: %s", self._label, exc)

    async def _resolve_thinking(self) -> None:
        if self._thinking_done:
            return
        self._thinking_done = True
        if self._fallback:
            return
        if self._mode is None:
            self._mode = "timeline"
        if self._mode == "timeline":
            await self._push(
                TaskChunk(id=THINKING_TASK_ID, title="Thinking", status="complete")
            )

    # ------------------------------------------------------------------ #
    # Live path
    # ------------------------------------------------------------------ #

    def _fail_live(self, action: str, exc: Exception) -> None:
        if not self._fallback:
            logger.error(
                "%s: live %s failed, falling back to snapshots: %s",
                self._label,
                action,
                exc,
            )
            self._fallback = True

    async def _ensure_handle(self, mode: RenderMode) -> bool:
        if self._handle_created:
            return True
        assert self._live is not None
        self._mode = mode
        try:
            self._handle = await self._live.create(mode)
        except Exception as exc:
            self._fail_live("create", exc)
            return False
        self._handle_created = True
        logger.info("%s: live message created (mode=%s)", self._label, mode)
        return True

    async def _push(self, chunk: RenderChunk, *, mode: RenderMode = "timeline") -> None:
        if self._fallback:
            return
        if not await self._ensure_handle(self._mode or mode):
            return
        assert self._live is not None
        try:
            await self._live.append(self._handle, chunk)
        except Exception as exc:
            self._fail_live("append", exc)
            return
        if not self._live_active:
            self._live_active = True
            logger.info("%s: live message activated", self._label)
        if isinstance(chunk, MarkdownChunk):
            await self._ensure_control()

    async def _ensure_control(self) -> None:
        if self._control_posted:
            return
        self._control_posted = True
        try:
            self._control_ref = await self._snapshot.post_control()
        except Exception as exc:
            logger.error("%s: failed to post cancel control: %s", self._label, exc)

    async def _finalize_live(self, outcome: TurnOutcome) -> str:
        assert self._live is not None
        if not self._thinking_done and self._mode == "timeline":
            self._thinking_done = True
            await self._append_quietly(
                TaskChunk(id=THINKING_TASK_ID, title="Thinking", status="complete")
            )
        if outcome.stopped:
            await self._append_quietly(MarkdownChunk(text=f"\n\n{STOPPED_MARKER}"))

        final_text = self._with_marker(outcome)
        try:
            await self._live.seal(
                self._handle, FinalContent(text=final_text, stopped=outcome.stopped)
            )
        except Exception as exc:
            logger.error("%s: seal failed: %s", self._label, exc)

        if self._control_ref is not None:
            try:
                await self._snapshot.delete(self._control_ref)
            except Exception as exc:
                logger.error("%s: failed to delete cancel control: %s", self._label, exc)
            self._control_ref = None
        return final_text

    async def _append_quietly(self, chunk: RenderChunk) -> None:
        assert self._live is not None
        try:
            await self._live.append(self._handle, chunk)
        except Exception as exc:
            logger.warning("%s: final append failed: %s", self._label, exc)

    async def _finalize_empty(self, outcome: TurnOutcome) -> str:
        """Live message created, nothing appended: post a single placeholder."""
        assert self._live is not None
        text = placeholder_text(outcome)
        logger.info("%s: no text produced, final message: %r", self._label, text)
        try:
            await self._live.append(self._handle, MarkdownChunk(text=text))
            await self._live.seal(
                self._handle, FinalContent(text=text, stopped=outcome.stopped)
            )
        except Exception as exc:
            logger.error("%s: placeholder via live failed: %s", self._label, exc)
            await self._final_upsert(text)
        return text

    # ------------------------------------------------------------------ #
    # Snapshot path
    # ------------------------------------------------------------------ #

    async def _snapshot_update(self) -> None:
        now = self._clock()
        if self._last_update is not None and now - self._last_update < self._update_interval:
            return
        self._last_update = now
        await self._ensure_control()
        if self._control_ref is None:
            return
        self._snapshot_updates += 1
        logger.debug(
            "%s: snapshot update #%d: %d chars",
            self._label,
            self._snapshot_updates,
            len(self.text),
        )
        try:
            await self._snapshot.upsert(self._control_ref, self.text, final=False)
        except Exception as exc:
            logger.error("%s: snapshot update failed: %s", self._label, exc)

    async def _finalize_snapshot(self, outcome: TurnOutcome) -> str:
        final_text = self._with_marker(outcome) if self.text else placeholder_text(outcome)
        await self._final_upsert(final_text)
        return final_text

    async def _final_upsert(self, text: str) -> None:
        logger.info("%s: final snapshot (%d chars)", self._label, len(text))
        try:
            self._control_ref = await self._snapshot.upsert(
                self._control_ref, text, final=True
            )
        except Exception as exc:
            logger.error("%s: final snapshot failed: %s", self._label, exc)

    def _with_marker(self, outcome: TurnOutcome) -> str:
        text = self.text
        if outcome.stopped:
            return f"{text}\n\n{STOPPED_MARKER}" if text else STOPPED_MARKER
        return text
