"""Terminal implementations of the live and snapshot channels."""

from __future__ import annotations

import itertools
import logging
from typing import Any

import click

from tether.stream.sink import (
    FinalContent,
    MarkdownChunk,
    PlanChunk,
    RenderChunk,
    RenderMode,
    TaskChunk,
)

logger = logging.getLogger(__name__)

_TASK_ICONS = {
    "in_progress": ("…", "cyan"),
    "complete": ("✓", "green"),
    "error": ("✗", "red"),
}


class _ConsoleWriter:
    """Shared terminal cursor state so chunks never share a line badly."""

    def __init__(self, err: bool = False) -> None:
        self.err = err
        self.at_line_start = True

    def text(self, text: str) -> None:
        if not text:
            return
        click.echo(text, nl=False, err=self.err)
        self.at_line_start = text.endswith("\n")

    def line(self, text: str) -> None:
        if not self.at_line_start:
            click.echo(err=self.err)
        click.echo(text, err=self.err)
        self.at_line_start = True

    def end(self) -> None:
        if not self.at_line_start:
            click.echo(err=self.err)
            self.at_line_start = True


class ConsoleLiveChannel:
    """Streams markdown as it arrives and prints task cards as lines."""

    def __init__(self, writer: _ConsoleWriter | None = None) -> None:
        self._writer = writer or _ConsoleWriter()
        self._ids = itertools.count(1)
        self._last_task: dict[str, TaskChunk] = {}

    async def create(self, mode: RenderMode) -> int:
        handle = next(self._ids)
        logger.debug("console live message %d created (mode=%s)", handle, mode)
        return handle

    async def append(self, handle: Any, chunk: RenderChunk) -> None:
        if isinstance(chunk, MarkdownChunk):
            self._writer.text(chunk.text)
        elif isinstance(chunk, PlanChunk):
            self._writer.line(click.style(f"[plan] {chunk.title}", bold=True))
        elif isinstance(chunk, TaskChunk):
            if self._last_task.get(chunk.id) == chunk:
                return
            self._last_task[chunk.id] = chunk
            self._writer.line(format_task(chunk))

    async def seal(self, handle: Any, final: FinalContent) -> None:
        self._writer.end()
        logger.debug("console live message %s sealed (%d chars)", handle, len(final.text))


class ConsoleSnapshotChannel:
    """Prints each snapshot's new suffix; terminals cannot rewrite in place."""

    def __init__(self, writer: _ConsoleWriter | None = None) -> None:
        self._writer = writer or _ConsoleWriter()
        self._ids = itertools.count(1)
        self._printed: dict[int, str] = {}

    async def post_control(self) -> int:
        ref = next(self._ids)
        self._printed[ref] = ""
        click.echo(click.style("(Ctrl+C to stop)", dim=True), err=True)
        return ref

    async def upsert(self, ref: int | None, text: str, *, final: bool) -> int:
        if ref is None:
            ref = next(self._ids)
        printed = self._printed.get(ref, "")
        if text.startswith(printed):
            self._writer.text(text[len(printed):])
        else:
            self._writer.line("")
            self._writer.text(text)
        self._printed[ref] = text
        if final:
            self._writer.end()
        return ref

    async def delete(self, ref: int) -> None:
        self._printed.pop(ref, None)


def format_task(chunk: TaskChunk) -> str:
    """One terminal line (plus source lines) for a task card."""
    icon, color = _TASK_ICONS[chunk.status]
    line = f"  {click.style(icon, fg=color)} {chunk.title}"
    if chunk.details:
        line += click.style(f" ({chunk.details})", dim=True)
    if chunk.output:
        line += click.style(f" → {chunk.output}", dim=True)
    for source in chunk.sources:
        line += "\n" + click.style(f"      ↳ {source.text} <{source.url}>", dim=True)
    return line


def console_channels(err: bool = False) -> tuple[ConsoleLiveChannel, ConsoleSnapshotChannel]:
    """Live and snapshot channels sharing one terminal cursor."""
    writer = _ConsoleWriter(err=err)
    return ConsoleLiveChannel(writer), ConsoleSnapshotChannel(writer)


async def echo_notice(text: str) -> None:
    click.echo(click.style(text, fg="yellow"), err=True)


async def echo_status(status: str) -> None:
    logger.info("status: %s", status)
