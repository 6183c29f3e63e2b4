"""tether sweep — reclaim idle worktrees."""

from __future__ import annotations

import asyncio
import signal

import click

from tether.runtime import Runtime, build_runtime, configure_logging, load_or_exit
from tether.sweeper import WorkspaceSweeper
from tether.workspace import SweepReport


@click.command()
@click.option(
    "-f",
    "--file",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Path to tether.yaml (default: ./tether.yaml).",
)
@click.option(
    "--idle-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Override workspace.idle_minutes.",
)
@click.option(
    "--watch",
    is_flag=True,
    help="Keep running, sweeping every workspace.sweep_interval seconds.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def sweep(
    config_file: str | None, idle_minutes: int | None, watch: bool, verbose: bool
) -> None:
    """Remove worktrees idle longer than the threshold with no local changes."""
    configure_logging(verbose)
    config = load_or_exit(config_file)
    runtime = build_runtime(config)
    try:
        if watch:
            asyncio.run(_watch(runtime, idle_minutes))
            return
        report = runtime.workspaces.sweep(idle_minutes)
    finally:
        runtime.close()

    _print_report(report)
    if report.failed:
        raise SystemExit(1)


async def _watch(runtime: Runtime, idle_minutes: int | None) -> None:
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    sweeper = WorkspaceSweeper(
        runtime.workspaces,
        runtime.registry.is_active,
        shutdown_event,
        idle_minutes=idle_minutes,
    )
    click.echo(
        f"Sweeping every {runtime.config.workspace.sweep_interval}s (Ctrl+C to stop)"
    )
    _print_report(await sweeper.run_once())
    await sweeper.start()
    try:
        await shutdown_event.wait()
    finally:
        await sweeper.stop()


def _print_report(report: SweepReport) -> None:
    for key in report.removed:
        click.echo(f"  Removed worktree for {key}")
    for key in report.skipped_dirty:
        click.echo(f"  Kept {key} (uncommitted changes)")
    for key in report.failed:
        click.echo(f"  Failed to remove worktree for {key}", err=True)
    click.echo(
        f"Swept {report.examined} idle worktree(s): "
        f"{len(report.removed)} removed, {len(report.skipped_dirty)} kept"
    )
