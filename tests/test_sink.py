"""Tests for the output multiplexer (live channel with snapshot fallback)."""

from __future__ import annotations

import asyncio
from typing import Any

from tether.constants import FAILURE_TEXT, NO_RESPONSE_TEXT, STOPPED_MARKER
from tether.stream.events import (
    PlanModeEntered,
    PlanUpdated,
    QuestionAsked,
    StatusChanged,
    SubTaskFinished,
    SubTaskProgress,
    SubTaskStarted,
    TextDelta,
    ThinkingResolved,
    ToolFinished,
    ToolInputFragment,
    ToolStarted,
)
from tether.stream.sink import (
    THINKING_TASK_ID,
    FinalContent,
    MarkdownChunk,
    PlanChunk,
    StreamSink,
    TaskChunk,
    TurnOutcome,
    placeholder_text,
)

# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #


class FakeLive:
    """Records live operations; can be told to fail chosen appends (1-based)."""

    def __init__(self, *, fail_create: bool = False, fail_on: set[int] | None = None) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.fail_create = fail_create
        self.fail_on = fail_on or set()
        self.appends = 0

    async def create(self, mode: str) -> str:
        self.calls.append(("create", mode))
        if self.fail_create:
            raise RuntimeError("streaming not supported")
        return "live-1"

    async def append(self, handle: Any, chunk: Any) -> None:
        self.appends += 1
        if self.appends in self.fail_on:
            raise RuntimeError("append rejected")
        self.calls.append(("append", chunk))

    async def seal(self, handle: Any, final: FinalContent) -> None:
        self.calls.append(("seal", final))

    def chunks(self) -> list[Any]:
        return [arg for op, arg in self.calls if op == "append"]


class FakeSnapshot:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.messages: dict[str, str] = {}
        self._next = 0

    async def post_control(self) -> str:
        self._next += 1
        ref = f"msg-{self._next}"
        self.messages[ref] = "(stop)"
        self.calls.append(("post_control", ref))
        return ref

    async def upsert(self, ref: str | None, text: str, *, final: bool) -> str:
        if ref is None:
            self._next += 1
            ref = f"msg-{self._next}"
        self.messages[ref] = text
        self.calls.append(("upsert", (ref, text, final)))
        return ref

    async def delete(self, ref: str) -> None:
        self.messages.pop(ref, None)
        self.calls.append(("delete", ref))

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _drain() -> None:
    """Let the sink's consumer task apply everything queued so far."""
    for _ in range(5):
        await asyncio.sleep(0)


def _tool_started(task_id: str = "task_1", name: str = "Read", hidden: bool = False) -> ToolStarted:
    return ToolStarted(
        index=1,
        task_id=task_id,
        name=name,
        hidden=hidden,
        status_phrase="is reading files...",
    )


def _tool_finished(task_id: str = "task_1", **kwargs: Any) -> ToolFinished:
    kwargs.setdefault("name", "Read")
    kwargs.setdefault("title", "Read a.py")
    return ToolFinished(index=1, task_id=task_id, **kwargs)


# ------------------------------------------------------------------ #
# Live path
# ------------------------------------------------------------------ #


class TestLivePath:
    async def test_chunks_applied_in_order(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(ThinkingResolved())
        sink.append(TextDelta(text="Hello"))
        sink.append(_tool_started())
        sink.append(_tool_finished())
        sink.append(TextDelta(text=" world"))
        final = await sink.finalize(TurnOutcome())

        assert live.calls[0] == ("create", "timeline")
        assert live.chunks() == [
            TaskChunk(id=THINKING_TASK_ID, title="Thinking", status="complete"),
            MarkdownChunk(text="Hello"),
            TaskChunk(id="task_1", title="Using Read...", status="in_progress"),
            TaskChunk(id="task_1", title="Read a.py", status="complete"),
            MarkdownChunk(text=" world"),
        ]
        assert live.calls[-1] == ("seal", FinalContent(text="Hello world"))
        assert final == "Hello world"
        assert sink.using_fallback is False

    async def test_control_posted_after_first_markdown(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(_tool_started())
        sink.append(TextDelta(text="a"))
        sink.append(TextDelta(text="b"))
        await sink.finalize(TurnOutcome())
        assert snap.ops().count("post_control") == 1

    async def test_control_deleted_after_seal(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(TextDelta(text="answer"))
        await sink.finalize(TurnOutcome())
        assert snap.ops() == ["post_control", "delete"]
        assert snap.messages == {}

    async def test_stopped_appends_marker_then_seals(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(ThinkingResolved())
        sink.append(TextDelta(text="partial answer"))
        final = await sink.finalize(TurnOutcome(stopped=True, exit_code=-15))

        assert final == f"partial answer\n\n{STOPPED_MARKER}"
        assert live.chunks()[-1] == MarkdownChunk(text=f"\n\n{STOPPED_MARKER}")
        assert live.calls[-1] == ("seal", FinalContent(text=final, stopped=True))

    async def test_thinking_completed_at_finalize_if_never_resolved(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(_tool_started())
        await sink.finalize(TurnOutcome())
        assert live.chunks()[-1] == TaskChunk(
            id=THINKING_TASK_ID, title="Thinking", status="complete"
        )

    async def test_hidden_tools_and_fragments_not_rendered(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(_tool_started(name="ExitPlanMode", hidden=True))
        sink.append(ToolInputFragment(index=1, fragment="{}"))
        sink.append(_tool_finished(name="ExitPlanMode", hidden=True))
        await sink.finalize(TurnOutcome())
        assert live.calls == []

    async def test_plan_mode_creates_plan_message(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(PlanModeEntered(title="Planning..."))
        sink.append(ThinkingResolved())
        sink.append(TextDelta(text="1. do it"))
        sink.append(PlanUpdated(title="Plan ready"))
        await sink.finalize(TurnOutcome())

        assert live.calls[0] == ("create", "plan")
        assert sink.mode == "plan"
        chunks = live.chunks()
        assert chunks[0] == PlanChunk(title="Planning...")
        assert chunks[-1] == PlanChunk(title="Plan ready")
        assert all(not isinstance(c, TaskChunk) for c in chunks)

    async def test_sub_task_cards(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(SubTaskStarted(parent_id="p", task_id="task_2", description="Sub-agent: x"))
        sink.append(
            SubTaskProgress(parent_id="p", task_id="task_2", description="Sub-agent: x", detail="Reading a")
        )
        sink.append(SubTaskFinished(parent_id="p", task_id="task_2", description="Sub-agent: x", output="ok"))
        await sink.finalize(TurnOutcome())
        tasks = [c for c in live.chunks() if c.id == "task_2"]
        assert [t.status for t in tasks] == ["in_progress", "in_progress", "complete"]
        assert tasks[1].details == "Reading a"
        assert tasks[2].output == "ok"

    async def test_question_rendered_but_not_in_final_text(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(TextDelta(text="Before."))
        sink.append(QuestionAsked(markdown="\n> *Pick one*\n\n"))
        final = await sink.finalize(TurnOutcome())
        assert MarkdownChunk(text="\n> *Pick one*\n\n") in live.chunks()
        assert final == "Before."

    async def test_status_callback(self) -> None:
        seen: list[str] = []

        async def on_status(status: str) -> None:
            seen.append(status)

        sink = StreamSink(FakeLive(), FakeSnapshot(), on_status=on_status)
        sink.append(StatusChanged(status="is thinking..."))
        sink.append(StatusChanged(status="is reading files..."))
        await sink.finalize(TurnOutcome())
        assert seen == ["is thinking...", "is reading files..."]

    async def test_events_after_finalize_dropped(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(TextDelta(text="x"))
        await sink.finalize(TurnOutcome())
        sink.append(TextDelta(text="late"))
        assert sink.text == "x"


# ------------------------------------------------------------------ #
# Empty turns
# ------------------------------------------------------------------ #


class TestEmptyTurns:
    async def test_nothing_created_posts_placeholder_via_snapshot(self) -> None:
        live, snap = FakeLive(), FakeSnapshot()
        sink = StreamSink(live, snap)
        final = await sink.finalize(TurnOutcome())
        assert final == NO_RESPONSE_TEXT
        assert live.calls == []
        assert snap.calls == [("upsert", ("msg-1", NO_RESPONSE_TEXT, True))]

    async def test_failed_turn_placeholder(self) -> None:
        sink = StreamSink(FakeLive(), FakeSnapshot())
        assert await sink.finalize(TurnOutcome(exit_code=1)) == FAILURE_TEXT

    async def test_stopped_turn_placeholder(self) -> None:
        sink = StreamSink(FakeLive(), FakeSnapshot())
        assert await sink.finalize(TurnOutcome(stopped=True, exit_code=-15)) == STOPPED_MARKER

    async def test_created_but_nothing_appended_uses_live_message(self) -> None:
        live = FakeLive(fail_on={1})
        snap = FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(_tool_started())
        final = await sink.finalize(TurnOutcome())

        assert final == NO_RESPONSE_TEXT
        assert live.chunks() == [MarkdownChunk(text=NO_RESPONSE_TEXT)]
        assert live.calls[-1] == ("seal", FinalContent(text=NO_RESPONSE_TEXT))
        assert snap.calls == []

    async def test_created_but_live_unusable_single_placeholder(self) -> None:
        live = FakeLive(fail_on={1, 2})
        snap = FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(_tool_started())
        final = await sink.finalize(TurnOutcome(exit_code=2))

        assert final == FAILURE_TEXT
        assert live.chunks() == []
        assert snap.calls == [("upsert", ("msg-1", FAILURE_TEXT, True))]

    def test_placeholder_text(self) -> None:
        assert placeholder_text(TurnOutcome()) == NO_RESPONSE_TEXT
        assert placeholder_text(TurnOutcome(exit_code=None)) == FAILURE_TEXT
        assert placeholder_text(TurnOutcome(stopped=True, exit_code=1)) == STOPPED_MARKER


# ------------------------------------------------------------------ #
# Fallback path
# ------------------------------------------------------------------ #


class TestFallback:
    async def test_create_failure_switches_to_snapshots(self) -> None:
        live, snap = FakeLive(fail_create=True), FakeSnapshot()
        clock = FakeClock()
        sink = StreamSink(live, snap, clock=clock)
        sink.append(TextDelta(text="one"))
        clock.now = 1.0
        sink.append(TextDelta(text=" two"))
        final = await sink.finalize(TurnOutcome())

        assert sink.using_fallback is True
        assert live.calls == [("create", "timeline")]
        assert final == "one two"
        assert snap.messages == {"msg-1": "one two"}
        assert snap.calls[0] == ("post_control", "msg-1")
        assert snap.calls[-1] == ("upsert", ("msg-1", "one two", True))

    async def test_append_failure_is_permanent(self) -> None:
        live = FakeLive(fail_on={2})
        snap = FakeSnapshot()
        sink = StreamSink(live, snap)
        sink.append(TextDelta(text="a"))
        sink.append(TextDelta(text="b"))
        sink.append(TextDelta(text="c"))
        final = await sink.finalize(TurnOutcome())

        assert live.chunks() == [MarkdownChunk(text="a")]
        assert live.appends == 2
        assert not any(op == "seal" for op, _ in live.calls)
        assert final == "abc"
        assert snap.messages["msg-1"] == "abc"

    async def test_updates_throttled(self) -> None:
        clock = FakeClock()
        snap = FakeSnapshot()
        sink = StreamSink(None, snap, update_interval=0.75, clock=clock)
        for i, now in enumerate([0.0, 0.1, 0.5, 0.8, 0.9, 1.6]):
            clock.now = now
            sink.append(TextDelta(text=str(i)))
            await _drain()
        await sink.finalize(TurnOutcome())

        intermediate = [args for op, args in snap.calls if op == "upsert" and not args[2]]
        assert [text for _, text, _ in intermediate] == ["0", "0123", "012345"]
        assert snap.calls[-1] == ("upsert", ("msg-1", "012345", True))
        assert sink.snapshot_updates == 3

    async def test_no_live_channel_means_fallback_from_start(self) -> None:
        snap = FakeSnapshot()
        sink = StreamSink(None, snap)
        sink.append(ThinkingResolved())
        sink.append(_tool_started())
        sink.append(TextDelta(text="plain"))
        final = await sink.finalize(TurnOutcome())
        assert sink.using_fallback is True
        assert final == "plain"

    async def test_stopped_marker_in_fallback(self) -> None:
        snap = FakeSnapshot()
        sink = StreamSink(None, snap)
        sink.append(TextDelta(text="partial"))
        final = await sink.finalize(TurnOutcome(stopped=True, exit_code=-15))
        assert final == f"partial\n\n{STOPPED_MARKER}"
        assert snap.messages["msg-1"] == final
