"""tether init — scaffold a starter configuration."""

from __future__ import annotations

from pathlib import Path

import click

CONFIG_FILENAME = "tether.yaml"
ENV_EXAMPLE_FILENAME = ".env.example"

TEMPLATE_YAML = """\
# tether configuration
version: "1"

generator:
  # Executable to spawn per turn (override with TETHER_GENERATOR_PATH)
  binary: claude
  # Extra flags appended after the built-in streaming flags
  additional_args: []

stream:
  # Seconds between full-text updates when live streaming is unavailable
  update_interval: 0.75
  max_output_len: 120

workspace:
  # Give each thread its own git worktree when the directory is a repo
  enabled: true
  trees_dir: trees
  branch_prefix: tether
  idle_minutes: 1440
  sweep_interval: 3600

store:
  path: .tether/tether.db

usage:
  dir: .tether/usage

# Appended to the generator's system prompt on every turn
conventions: []
#  - Run the test suite before committing.
"""

TEMPLATE_ENV_EXAMPLE = """\
# Variables prefixed with ENV_ are passed to the generator without the
# prefix, e.g. ENV_GITHUB_TOKEN becomes GITHUB_TOKEN.
# Copy this file to .env and fill in values.

ENV_GITHUB_TOKEN=

# Optional: path to the generator binary
# TETHER_GENERATOR_PATH=
"""


@click.command()
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing tether.yaml if it exists.",
)
def init(force: bool) -> None:
    """Write a starter tether.yaml in the current directory."""
    cwd = Path.cwd()
    config_path = cwd / CONFIG_FILENAME
    env_example_path = cwd / ENV_EXAMPLE_FILENAME

    if config_path.exists() and not force:
        raise click.ClickException(
            f"{CONFIG_FILENAME} already exists. Use --force to overwrite."
        )

    try:
        config_path.write_text(TEMPLATE_YAML, encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Cannot write {CONFIG_FILENAME}: {exc}") from exc
    click.echo(f"  Created {CONFIG_FILENAME}")

    if not env_example_path.exists() or force:
        try:
            env_example_path.write_text(TEMPLATE_ENV_EXAMPLE, encoding="utf-8")
        except OSError as exc:
            raise click.ClickException(
                f"Cannot write {ENV_EXAMPLE_FILENAME}: {exc}"
            ) from exc
        click.echo(f"  Created {ENV_EXAMPLE_FILENAME}")
    else:
        click.echo(f"  Skipped {ENV_EXAMPLE_FILENAME} (already exists)")

    click.echo()
    click.echo("Next steps:")
    click.echo("  1. Run `tether cwd <thread> <path>` to point a thread at a project")
    click.echo('  2. Run `tether run -t <thread> "your prompt"`')
