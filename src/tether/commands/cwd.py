"""tether cwd — set the working directory of a thread or scope."""

from __future__ import annotations

from pathlib import Path

import click

from tether.runtime import build_runtime, load_or_exit


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
    "--default-for",
    "scope_key",
    default=None,
    help="Also make PATH the default for threads started in this scope.",
)
@click.argument("thread")
@click.argument("path", type=click.Path(exists=True, file_okay=False))
def cwd(config_file: str | None, scope_key: str | None, thread: str, path: str) -> None:
    """Point THREAD at PATH. Its next turn starts a new session."""
    directory = str(Path(path).resolve())
    config = load_or_exit(config_file)
    runtime = build_runtime(config)
    try:
        runtime.registry.set_directory(thread, directory)
        if scope_key is not None:
            runtime.registry.set_scope_default(scope_key, directory)
    finally:
        runtime.close()

    click.echo(f"  {thread} → {directory}")
    if scope_key is not None:
        click.echo(f"  Default for scope {scope_key} → {directory}")
