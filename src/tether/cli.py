"""Root CLI group and version flag."""

import signal

import click

# Keep a closed stdout pipe from killing the process mid-stream.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)

from tether import __version__
from tether.commands.cwd import cwd
from tether.commands.init import init
from tether.commands.reset import reset
from tether.commands.run import run
from tether.commands.sweep import sweep


@click.group()
@click.version_option(version=__version__, prog_name="tether")
def cli() -> None:
    """tether — run a coding agent per chat thread."""


cli.add_command(init)
cli.add_command(run)
cli.add_command(sweep)
cli.add_command(reset)
cli.add_command(cwd)
