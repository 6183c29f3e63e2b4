"""Turn pipeline: admission, workspace, spawn, parse, render, release."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from tether.config.models import TetherConfig
from tether.constants import (
    BUSY_TEXT,
    FAILURE_TEXT,
    NO_DIRECTORY_TEXT,
    NoticeCallback,
    StatusCallback,
)
from tether.context import ThreadMessage, build_prompt
from tether.registry import GenerationHandle, SessionRegistry
from tether.store import SessionStore
from tether.stream.events import (
    LifecycleEvent,
    SessionIdentified,
    StatusChanged,
    TurnMetrics,
)
from tether.stream.parser import StreamParser
from tether.stream.sink import LiveChannel, SnapshotChannel, StreamSink, TurnOutcome
from tether.supervisor import (
    GenerationProcess,
    ProcessSupervisor,
    SpawnContext,
    SpawnError,
    build_args,
    build_env,
)
from tether.usage import UsageRecord, UsageRecorder
from tether.workspace import WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TurnRequest:
    """One inbound user turn."""

    thread_key: str
    prompt: str
    scope_key: str | None = None
    user_id: str | None = None
    bot_user_id: str | None = None
    context: Sequence[ThreadMessage] = ()


class Orchestrator:
    """Drive one generation per turn, at most one per thread."""

    def __init__(
        self,
        config: TetherConfig,
        store: SessionStore,
        registry: SessionRegistry,
        workspaces: WorkspaceManager,
        supervisor: ProcessSupervisor,
        recorder: UsageRecorder | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._store = store
        self._registry = registry
        self._workspaces = workspaces
        self._supervisor = supervisor
        self._recorder = recorder
        self._environ = environ
        self._clock = clock

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def cancel(self, thread_key: str) -> bool:
        """Send SIGTERM to the thread's generation. The slot frees on exit."""
        return self._registry.cancel(thread_key)

    async def handle_turn(
        self,
        request: TurnRequest,
        *,
        live: LiveChannel | None,
        snapshot: SnapshotChannel,
        notify: NoticeCallback,
        on_status: StatusCallback | None = None,
    ) -> TurnOutcome | None:
        """Run one turn end to end.

        Returns ``None`` when the turn was rejected or ignored before a
        generation was attempted.
        """
        key = request.thread_key
        admission = self._registry.admit(key)
        if not admission.accepted:
            await self._notify(notify, key, BUSY_TEXT)
            return None

        handle = admission.handle
        try:
            return await self._run(request, handle, live, snapshot, notify, on_status)
        finally:
            self._registry.release(key, handle)

    async def _run(
        self,
        request: TurnRequest,
        handle: GenerationHandle,
        live: LiveChannel | None,
        snapshot: SnapshotChannel,
        notify: NoticeCallback,
        on_status: StatusCallback | None,
    ) -> TurnOutcome | None:
        key = request.thread_key
        text = request.prompt.strip()
        if not text:
            logger.info("%s: empty prompt ignored", key)
            return None

        resolution = self._registry.get_or_create_token(key)
        directory = self._registry.resolve_directory(key, request.scope_key)
        if directory is None:
            await self._notify(notify, key, NO_DIRECTORY_TEXT)
            return None

        cwd = await self._workspaces.resolve(key, directory)
        generator = self._config.generator
        args = build_args(
            build_prompt(text, request.context),
            resolution.token,
            is_resume=resolution.is_resume,
            additional_args=generator.additional_args,
            conventions=[*self._config.conventions, *self._store.conventions()],
        )
        env = build_env(
            os.environ if self._environ is None else self._environ,
            SpawnContext(
                thread_key=key,
                scope_id=request.scope_key,
                user_id=request.user_id,
                bot_user_id=request.bot_user_id,
            ),
            generator,
        )

        logger.info(
            "%s: spawning generator: cwd=%s resume=%s token=%s",
            key,
            cwd,
            resolution.is_resume,
            resolution.token,
        )
        started = self._clock()
        try:
            process = await self._supervisor.spawn(args, env, cwd, label=key)
        except SpawnError as exc:
            logger.error("%s: %s", key, exc)
            self._registry.release(key, handle)
            await self._notify(notify, key, FAILURE_TEXT)
            return TurnOutcome(exit_code=None, final_text=FAILURE_TEXT)

        parser = StreamParser(label=key, max_output_len=self._config.stream.max_output_len)
        handle.parser = parser
        handle.attach(process)
        sink = StreamSink(
            live,
            snapshot,
            update_interval=self._config.stream.update_interval,
            clock=self._clock,
            on_status=on_status,
            label=key,
        )
        sink.append(StatusChanged(status="is thinking..."))

        try:
            await self._pump(key, process, parser, sink)
            status = await process.wait()
        except BaseException:
            await self._abort(key, process, sink)
            raise
        # The next turn may be admitted from here on.
        self._registry.release(key, handle)

        for event in parser.finish():
            self._dispatch(key, event, sink)

        stopped = handle.cancel_requested or status.terminated
        elapsed_ms = int((self._clock() - started) * 1000)
        logger.info(
            "%s: generator exited: code=%s signal=%s elapsed=%dms stopped=%s",
            key,
            status.code,
            status.signal,
            elapsed_ms,
            stopped,
        )
        if parser.result is not None:
            self._record_usage(request, parser.result, stopped, elapsed_ms)

        outcome = TurnOutcome(
            stopped=stopped, exit_code=status.returncode, metrics=parser.result
        )
        final_text = await sink.finalize(outcome)
        return dataclasses.replace(outcome, final_text=final_text)

    async def _pump(
        self,
        key: str,
        process: GenerationProcess,
        parser: StreamParser,
        sink: StreamSink,
    ) -> None:
        async for chunk in process.read_chunks():
            for event in parser.feed(chunk):
                self._dispatch(key, event, sink)

    async def _abort(
        self, key: str, process: GenerationProcess, sink: StreamSink
    ) -> None:
        """Terminate the generator after a pipeline error and close the output.

        The slot stays held until the process has exited.
        """
        logger.error("%s: turn aborted, terminating generator", key)
        process.cancel()
        try:
            status = await asyncio.shield(process.wait())
        except Exception as exc:
            logger.error("%s: waiting for generator exit failed: %s", key, exc)
            exit_code = None
        else:
            exit_code = status.returncode
        try:
            await sink.finalize(TurnOutcome(exit_code=exit_code))
        except Exception as exc:
            logger.error("%s: failed to finalize output: %s", key, exc)

    def _dispatch(self, key: str, event: LifecycleEvent, sink: StreamSink) -> None:
        if isinstance(event, SessionIdentified):
            self._registry.set_token(key, event.token)
        sink.append(event)

    def _record_usage(
        self,
        request: TurnRequest,
        metrics: TurnMetrics,
        stopped: bool,
        elapsed_ms: int,
    ) -> None:
        if self._recorder is None:
            return
        try:
            self._recorder.record(
                UsageRecord(
                    thread_key=request.thread_key,
                    user_id=request.user_id,
                    model=metrics.model,
                    input_tokens=metrics.input_tokens,
                    output_tokens=metrics.output_tokens,
                    cost_usd=metrics.cost_usd,
                    duration_ms=metrics.duration_ms or elapsed_ms,
                    num_turns=metrics.num_turns,
                    success=metrics.success,
                    stopped=stopped,
                )
            )
        except OSError as exc:
            logger.error("%s: failed to log usage: %s", request.thread_key, exc)
            return
        logger.info(
            "%s: usage logged: cost=$%.4f turns=%d",
            request.thread_key,
            metrics.cost_usd,
            metrics.num_turns,
        )

    async def _notify(self, notify: NoticeCallback, key: str, text: str) -> None:
        try:
            await notify(text)
        except Exception as exc:
            logger.error("%s: failed to post notice %r: %s", key, text, exc)
