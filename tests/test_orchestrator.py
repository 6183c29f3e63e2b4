"""Tests for the turn pipeline, with a fake generator process."""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from tether.config.models import TetherConfig, WorkspaceConfig
from tether.constants import BUSY_TEXT, FAILURE_TEXT, NO_DIRECTORY_TEXT, STOPPED_MARKER
from tether.context import CONTEXT_HEADER, ThreadMessage
from tether.orchestrator import Orchestrator, TurnRequest
from tether.registry import SessionRegistry
from tether.store import SessionStore
from tether.supervisor import ExitStatus, SpawnError
from tether.usage import UsageRecorder, read_usage
from tether.workspace import WorkspaceManager

# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #


def _line(data: dict[str, Any]) -> bytes:
    return (json.dumps(data) + "\n").encode()


def _init(session_id: str = "sess-1") -> bytes:
    return _line({"type": "system", "subtype": "init", "session_id": session_id, "model": "m"})


def _text(text: str, index: int = 0) -> bytes:
    start = {
        "type": "stream_event",
        "event": {"type": "content_block_start", "index": index, "content_block": {"type": "text"}},
    }
    delta = {
        "type": "stream_event",
        "event": {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "text_delta", "text": text},
        },
    }
    return _line(start) + _line(delta)


def _result(cost: float = 0.02) -> bytes:
    return _line(
        {
            "type": "result",
            "subtype": "success",
            "total_cost_usd": cost,
            "duration_ms": 1500,
            "num_turns": 1,
            "usage": {"input_tokens": 12, "output_tokens": 34},
        }
    )


class FakeProcess:
    """Yields canned stdout chunks; optionally keeps running until cancelled."""

    def __init__(
        self,
        chunks: list[bytes],
        exit_code: int = 0,
        *,
        hold: bool = False,
        error: Exception | None = None,
    ) -> None:
        self._chunks = chunks
        self._exit_code = exit_code
        self._hold = hold
        self._error = error
        self._released = asyncio.Event()
        self.cancel_requested = False
        self.cancel_calls = 0

    async def read_chunks(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error
        if self._hold:
            await self._released.wait()

    def cancel(self) -> None:
        self.cancel_calls += 1
        self.cancel_requested = True
        self._released.set()

    async def wait(self) -> ExitStatus:
        if self.cancel_requested:
            return ExitStatus.from_returncode(-signal.SIGTERM)
        return ExitStatus.from_returncode(self._exit_code)


class ExitWatchingProcess(FakeProcess):
    """Records whether the thread still held its slot while exiting."""

    def __init__(self, registry: SessionRegistry, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._registry = registry
        self.active_during_wait: bool | None = None

    async def wait(self) -> ExitStatus:
        self.active_during_wait = self._registry.is_active("t1")
        await asyncio.sleep(0)
        return await super().wait()


class RecordingLive:
    def __init__(self) -> None:
        self.chunks: list[Any] = []
        self.sealed: Any = None

    async def create(self, mode: str) -> str:
        return "live"

    async def append(self, handle: Any, chunk: Any) -> None:
        self.chunks.append(chunk)

    async def seal(self, handle: Any, final: Any) -> None:
        self.sealed = final


class RecordingSnapshot:
    def __init__(self) -> None:
        self.texts: list[tuple[str, bool]] = []

    async def post_control(self) -> str:
        return "control"

    async def upsert(self, ref: Any, text: str, *, final: bool) -> str:
        self.texts.append((text, final))
        return ref or "msg"

    async def delete(self, ref: Any) -> None:
        pass


class Harness:
    """An orchestrator wired to in-memory state and a fake supervisor."""

    def __init__(self, tmp_path: Path, config: TetherConfig | None = None) -> None:
        self.config = config or TetherConfig(workspace=WorkspaceConfig(enabled=False))
        self.store = SessionStore()
        self.registry = SessionRegistry(self.store)
        self.workspaces = WorkspaceManager(self.store, self.config.workspace)
        self.supervisor = MagicMock()
        self.supervisor.spawn = AsyncMock()
        self.recorder = UsageRecorder(tmp_path / "usage")
        self.orchestrator = Orchestrator(
            self.config,
            self.store,
            self.registry,
            self.workspaces,
            self.supervisor,
            self.recorder,
            environ={"PATH": "/usr/bin", "CLAUDECODE": "1"},
        )
        self.notices: list[str] = []
        self.statuses: list[str] = []
        self.live = RecordingLive()
        self.snapshot = RecordingSnapshot()
        self.workdir = tmp_path / "work"
        self.workdir.mkdir()

    async def notify(self, text: str) -> None:
        self.notices.append(text)

    async def on_status(self, status: str) -> None:
        self.statuses.append(status)

    def set_process(self, process: FakeProcess) -> None:
        self.supervisor.spawn.return_value = process

    async def turn(self, prompt: str = "hello", thread_key: str = "t1", **kwargs: Any) -> Any:
        return await self.orchestrator.handle_turn(
            TurnRequest(thread_key=thread_key, prompt=prompt, **kwargs),
            live=self.live,
            snapshot=self.snapshot,
            notify=self.notify,
            on_status=self.on_status,
        )

    def spawn_args(self) -> list[str]:
        return self.supervisor.spawn.call_args.args[0]

    def spawn_env(self) -> dict[str, str]:
        return self.supervisor.spawn.call_args.args[1]


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    h = Harness(tmp_path)
    h.registry.set_directory("t1", str(h.workdir))
    return h


# ------------------------------------------------------------------ #
# Happy path
# ------------------------------------------------------------------ #


class TestTurn:
    async def test_streams_answer(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([_init(), _text("Hello"), _result()]))
        outcome = await harness.turn()

        assert outcome.final_text == "Hello"
        assert outcome.stopped is False
        assert outcome.exit_code == 0
        assert harness.live.sealed.text == "Hello"
        assert harness.statuses[0] == "is thinking..."
        assert harness.registry.is_active("t1") is False

    async def test_spawn_arguments(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([_result()]))
        await harness.turn("do the thing")

        args = harness.spawn_args()
        assert args[:2] == ["-p", "do the thing"]
        assert "--session-id" in args
        assert harness.supervisor.spawn.call_args.args[2] == harness.workdir
        assert harness.supervisor.spawn.call_args.kwargs["label"] == "t1"

    async def test_environment(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([]))
        await harness.turn(scope_key="C1", user_id="U1")

        env = harness.spawn_env()
        assert "CLAUDECODE" not in env
        assert env["TETHER_THREAD_KEY"] == "t1"
        assert env["TETHER_SCOPE_ID"] == "C1"
        assert env["TETHER_USER_ID"] == "U1"

    async def test_reported_session_is_resumed(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([_init("sess-abc"), _text("one")]))
        await harness.turn()
        session = harness.store.get_session("t1")
        assert session is not None
        assert session.token == "sess-abc"

        harness.set_process(FakeProcess([_text("two")]))
        await harness.turn()
        args = harness.spawn_args()
        assert args[args.index("--resume") + 1] == "sess-abc"

    async def test_usage_recorded(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([_init(), _text("x"), _result(cost=0.5)]))
        await harness.turn(user_id="U1")
        harness.recorder.close()

        (record,) = read_usage(harness.recorder.current_file())
        assert record.thread_key == "t1"
        assert record.user_id == "U1"
        assert record.cost_usd == 0.5
        assert record.input_tokens == 12
        assert record.output_tokens == 34
        assert record.model == "m"

    async def test_no_result_no_usage(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([_text("x")]))
        await harness.turn()
        assert harness.recorder.record_count == 0

    async def test_conventions_passed(self, tmp_path: Path) -> None:
        harness = Harness(
            tmp_path,
            TetherConfig(
                workspace=WorkspaceConfig(enabled=False), conventions=["From config."]
            ),
        )
        harness.registry.set_directory("t1", str(harness.workdir))
        harness.store.add_convention("From store.", added_by="U1")
        harness.set_process(FakeProcess([]))
        await harness.turn()

        args = harness.spawn_args()
        prompt = args[args.index("--append-system-prompt") + 1]
        assert "- From config.\n- From store." in prompt

    async def test_thread_context_prefixes_prompt(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([]))
        await harness.turn(
            "and now?", context=[ThreadMessage(ts="1", user="U2", text="earlier")]
        )
        prompt = harness.spawn_args()[1]
        assert prompt.startswith(CONTEXT_HEADER)
        assert "<@U2>: earlier" in prompt
        assert prompt.endswith("and now?")

    async def test_odd_result_line_does_not_abort(self, harness: Harness) -> None:
        harness.set_process(
            FakeProcess(
                [
                    _text("hello"),
                    b'{"type":"result","duration_ms":1e400}\n',
                    _line({"type": "stream_event", "parent_tool_use_id": ["x"], "event": {}}),
                ]
            )
        )
        outcome = await harness.turn()
        assert outcome.final_text == "hello"
        assert outcome.failed is False
        assert harness.live.sealed.text == "hello"

    async def test_failed_exit_without_text(self, harness: Harness) -> None:
        harness.set_process(FakeProcess([], exit_code=1))
        outcome = await harness.turn()
        assert outcome.failed is True
        assert outcome.final_text == FAILURE_TEXT
        assert harness.snapshot.texts == [(FAILURE_TEXT, True)]


# ------------------------------------------------------------------ #
# Rejections and failures
# ------------------------------------------------------------------ #


class TestRejections:
    async def test_busy_thread_rejected(self, harness: Harness) -> None:
        harness.registry.admit("t1")
        outcome = await harness.turn()
        assert outcome is None
        assert harness.notices == [BUSY_TEXT]
        harness.supervisor.spawn.assert_not_awaited()

    async def test_concurrent_turns_single_flight(self, harness: Harness) -> None:
        process = FakeProcess([_text("first")], hold=True)
        harness.set_process(process)
        first = asyncio.create_task(harness.turn())
        await asyncio.sleep(0.05)

        assert await harness.turn() is None
        assert harness.notices == [BUSY_TEXT]
        assert harness.supervisor.spawn.await_count == 1

        process.cancel()
        await first

    async def test_no_directory(self, harness: Harness) -> None:
        outcome = await harness.turn(thread_key="fresh")
        assert outcome is None
        assert harness.notices == [NO_DIRECTORY_TEXT]
        assert harness.registry.is_active("fresh") is False

    async def test_scope_default_directory(self, harness: Harness) -> None:
        harness.registry.set_scope_default("C1", str(harness.workdir))
        harness.set_process(FakeProcess([_text("ok")]))
        outcome = await harness.turn(thread_key="fresh", scope_key="C1")
        assert outcome.final_text == "ok"

    async def test_empty_prompt_ignored(self, harness: Harness) -> None:
        assert await harness.turn("   ") is None
        harness.supervisor.spawn.assert_not_awaited()
        assert harness.registry.is_active("t1") is False

    async def test_spawn_failure_releases_slot(self, harness: Harness) -> None:
        harness.supervisor.spawn.side_effect = SpawnError("not found")
        outcome = await harness.turn()

        assert outcome.exit_code is None
        assert outcome.failed is True
        assert harness.notices == [FAILURE_TEXT]
        assert harness.registry.is_active("t1") is False

    async def test_notice_failure_does_not_raise(self, harness: Harness) -> None:
        harness.registry.admit("t1")

        async def broken_notify(text: str) -> None:
            raise RuntimeError("chat API down")

        outcome = await harness.orchestrator.handle_turn(
            TurnRequest(thread_key="t1", prompt="hi"),
            live=None,
            snapshot=harness.snapshot,
            notify=broken_notify,
        )
        assert outcome is None

    async def test_stream_error_terminates_process(self, harness: Harness) -> None:
        process = ExitWatchingProcess(
            harness.registry, [_text("partial")], error=RuntimeError("pipe broke")
        )
        harness.set_process(process)
        with pytest.raises(RuntimeError, match="pipe broke"):
            await harness.turn()

        assert process.cancel_calls == 1
        # Held until the process exited, released afterwards.
        assert process.active_during_wait is True
        assert harness.registry.is_active("t1") is False
        assert harness.live.sealed is not None
        assert harness.live.sealed.text == "partial"

    async def test_stream_error_without_text_reports_failure(
        self, harness: Harness
    ) -> None:
        harness.set_process(FakeProcess([], error=RuntimeError("pipe broke")))
        with pytest.raises(RuntimeError):
            await harness.turn()
        assert harness.snapshot.texts == [(FAILURE_TEXT, True)]


# ------------------------------------------------------------------ #
# Cancellation
# ------------------------------------------------------------------ #


class TestCancellation:
    async def test_cancel_renders_stopped_marker(self, harness: Harness) -> None:
        process = FakeProcess([_init(), _text("partial answer")], hold=True)
        harness.set_process(process)
        task = asyncio.create_task(harness.turn())
        await asyncio.sleep(0.05)

        assert harness.orchestrator.cancel("t1") is True
        # Held until the process actually exits.
        assert harness.registry.is_active("t1") is True

        outcome = await task
        assert outcome.stopped is True
        assert outcome.failed is False
        assert outcome.final_text == f"partial answer\n\n{STOPPED_MARKER}"
        assert harness.live.sealed.stopped is True
        assert harness.registry.is_active("t1") is False

    async def test_cancel_unknown_thread(self, harness: Harness) -> None:
        assert harness.orchestrator.cancel("nobody") is False

    async def test_cancel_with_no_text(self, harness: Harness) -> None:
        process = FakeProcess([], hold=True)
        harness.set_process(process)
        task = asyncio.create_task(harness.turn())
        await asyncio.sleep(0.05)
        harness.orchestrator.cancel("t1")
        outcome = await task
        assert outcome.final_text == STOPPED_MARKER
