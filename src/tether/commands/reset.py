"""tether reset — start a thread's next turn in a fresh session."""

from __future__ import annotations

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
@click.argument("thread")
def reset(config_file: str | None, thread: str) -> None:
    """Forget THREAD's session token. Its directory is kept."""
    config = load_or_exit(config_file)
    runtime = build_runtime(config)
    try:
        if runtime.store.get_session(thread) is None:
            raise click.ClickException(f"Unknown thread '{thread}'")
        runtime.registry.reset_token(thread)
    finally:
        runtime.close()
    click.echo(f"  Reset session for {thread}")
