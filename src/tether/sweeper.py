"""Periodic reclamation of idle worktrees.

Provides a shutdown-aware sleep loop and managed task lifecycle
(start / stop) around :meth:`WorkspaceManager.sweep`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable

from tether.workspace import SweepReport, WorkspaceManager

logger = logging.getLogger(__name__)


class WorkspaceSweeper:
    """Run a worktree sweep every ``interval`` seconds until shutdown."""

    def __init__(
        self,
        workspaces: WorkspaceManager,
        is_active: Callable[[str], bool],
        shutdown_event: asyncio.Event,
        interval: int | float | None = None,
        idle_minutes: int | None = None,
    ) -> None:
        self._workspaces = workspaces
        self._is_active = is_active
        self._shutdown_event = shutdown_event
        config = workspaces.config
        self._interval = config.sweep_interval if interval is None else interval
        self._idle_minutes = config.idle_minutes if idle_minutes is None else idle_minutes
        self._task: asyncio.Task[None] | None = None
        self.last_report: SweepReport | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        """Start the background loop unless sweeping is disabled."""
        if not self._should_start():
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the background task and wait for cleanup."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def run_once(self) -> SweepReport:
        """Sweep immediately."""
        report = self._workspaces.sweep(self._idle_minutes, self._is_active)
        self.last_report = report
        logger.info(
            "worktree sweep done: removed=%d skipped_active=%d skipped_dirty=%d failed=%d",
            len(report.removed),
            len(report.skipped_active),
            len(report.skipped_dirty),
            len(report.failed),
        )
        return report

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _should_start(self) -> bool:
        if not self._workspaces.config.enabled or self._interval <= 0:
            logger.info("worktree sweeper disabled")
            return False
        return True

    async def _shutdown_aware_sleep(self, duration: float) -> bool:
        """Sleep in 1-second chunks, returning ``True`` if shutdown was signalled."""
        elapsed = 0.0
        while elapsed < duration:
            if self._shutdown_event.is_set():
                return True
            await asyncio.sleep(min(1.0, duration - elapsed))
            elapsed += 1.0
        return False

    async def _loop(self) -> None:
        """Sleep-and-sweep loop that runs until shutdown or cancellation."""
        try:
            while not self._shutdown_event.is_set():
                if await self._shutdown_aware_sleep(self._interval):
                    return
                try:
                    await self.run_once()
                except Exception as exc:
                    logger.error("worktree sweep error: %s", exc)
        except asyncio.CancelledError:
            return
