"""tether run — drive one turn against the terminal."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from pathlib import Path

import click

from tether.channels import console_channels, echo_notice, echo_status
from tether.config.models import TetherConfig
from tether.orchestrator import TurnRequest
from tether.registry import SessionRegistry
from tether.runtime import build_runtime, configure_logging, load_or_exit
from tether.stream.sink import TurnOutcome
from tether.supervisor import SpawnError, check_binary

logger = logging.getLogger(__name__)


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
    "-t",
    "--thread",
    "thread_key",
    default="console",
    show_default=True,
    help="Thread key; turns on the same key continue one session.",
)
@click.option("-s", "--scope", "scope_key", default=None, help="Scope key for default directories.")
@click.option(
    "-C",
    "--directory",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Working directory for the thread (resets its session if changed).",
)
@click.option("--no-live", is_flag=True, help="Render with periodic full-text updates only.")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
@click.argument("prompt", nargs=-1, required=True)
def run(
    config_file: str | None,
    thread_key: str,
    scope_key: str | None,
    directory: str | None,
    no_live: bool,
    verbose: bool,
    prompt: tuple[str, ...],
) -> None:
    """Send PROMPT to the generator and stream the answer. Ctrl+C stops it."""
    configure_logging(verbose)
    config = load_or_exit(config_file)
    try:
        check_binary(config.generator.binary)
    except SpawnError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    outcome = asyncio.run(
        _run_turn(config, thread_key, scope_key, directory, " ".join(prompt), not no_live)
    )
    if outcome is None or outcome.failed:
        raise SystemExit(1)


async def _run_turn(
    config: TetherConfig,
    thread_key: str,
    scope_key: str | None,
    directory: str | None,
    prompt: str,
    use_live: bool,
) -> TurnOutcome | None:
    runtime = build_runtime(config)
    try:
        _prepare_directory(runtime.registry, thread_key, scope_key, directory)

        live, snapshot = console_channels()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, runtime.orchestrator.cancel, thread_key)
        try:
            outcome = await runtime.orchestrator.handle_turn(
                TurnRequest(thread_key=thread_key, prompt=prompt, scope_key=scope_key),
                live=live if use_live else None,
                snapshot=snapshot,
                notify=echo_notice,
                on_status=echo_status,
            )
        finally:
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(signal.SIGINT)
    finally:
        runtime.close()

    if outcome is not None and outcome.metrics is not None:
        metrics = outcome.metrics
        click.echo(
            click.style(
                f"({metrics.num_turns} turns, ${metrics.cost_usd:.4f}, "
                f"{metrics.duration_ms / 1000:.1f}s)",
                dim=True,
            ),
            err=True,
        )
    return outcome


def _prepare_directory(
    registry: SessionRegistry,
    thread_key: str,
    scope_key: str | None,
    directory: str | None,
) -> None:
    """Apply ``-C``, defaulting a brand-new thread to the current directory."""
    if directory is None:
        if registry.resolve_directory(thread_key, scope_key) is not None:
            return
        directory = str(Path.cwd())
        logger.info("%s: no directory configured, using %s", thread_key, directory)
    resolved = str(Path(directory).resolve())
    if registry.resolve_directory(thread_key, scope_key) == resolved:
        return
    registry.set_directory(thread_key, resolved)
