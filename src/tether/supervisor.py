"""Process supervisor: spawns one generator subprocess per turn."""

from __future__ import annotations

import asyncio
import collections
import contextlib
import logging
import os
import shutil
import signal
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from tether.config.models import GeneratorConfig

logger = logging.getLogger(__name__)

#: Maximum bytes buffered by the subprocess stream readers (1 MB).
_MAX_LINE_BYTES = 1_048_576

#: Bytes requested per stdout read.
_READ_CHUNK_BYTES = 65_536

#: Stderr lines kept for the exit preview.
_STDERR_TAIL_LINES = 50

#: Flags that make the generator emit incremental stream-json events.
STREAM_FLAGS = (
    "--output-format",
    "stream-json",
    "--verbose",
    "--include-partial-messages",
    "--dangerously-skip-permissions",
)


class SpawnError(Exception):
    """The generator process could not be started."""


@dataclass(frozen=True)
class SpawnContext:
    """Caller identity injected into the generator's environment."""

    thread_key: str
    scope_id: str | None = None
    user_id: str | None = None
    bot_user_id: str | None = None


@dataclass(frozen=True)
class ExitStatus:
    """How the process exited: a code, or the signal that killed it."""

    code: int | None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> ExitStatus:
        if returncode < 0:
            return cls(code=None, signal=-returncode)
        return cls(code=returncode)

    @property
    def returncode(self) -> int:
        if self.signal is not None:
            return -self.signal
        return self.code or 0

    @property
    def terminated(self) -> bool:
        return self.signal == signal.SIGTERM


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def build_args(
    prompt: str,
    token: str,
    *,
    is_resume: bool,
    additional_args: Sequence[str] = (),
    conventions: Sequence[str] = (),
) -> list[str]:
    """Build the generator argument list (without the binary)."""
    args = ["-p", prompt, *STREAM_FLAGS, *additional_args]
    if is_resume:
        args.extend(["--resume", token])
    else:
        args.extend(["--session-id", token])
    if conventions:
        lines = "\n".join(f"- {item}" for item in conventions)
        args.extend(["--append-system-prompt", f"\nTeam conventions:\n{lines}"])
    return args


def build_env(
    base_env: Mapping[str, str],
    context: SpawnContext,
    config: GeneratorConfig | None = None,
) -> dict[str, str]:
    """Derive the generator environment from the host environment.

    Drops nested-session markers and stripped keys, re-exports
    ``<env_prefix>NAME`` host variables as ``NAME``, then injects the
    caller context under ``<context_prefix>``.
    """
    cfg = config or GeneratorConfig()
    dropped = set(cfg.nested_session_markers) | set(cfg.stripped_env)
    env = {key: value for key, value in base_env.items() if key not in dropped}

    prefix = cfg.env_prefix
    for key, value in base_env.items():
        if key.startswith(prefix) and len(key) > len(prefix):
            env[key[len(prefix):]] = value

    ctx = cfg.context_prefix
    env[f"{ctx}THREAD_KEY"] = context.thread_key
    if context.scope_id:
        env[f"{ctx}SCOPE_ID"] = context.scope_id
    if context.user_id:
        env[f"{ctx}USER_ID"] = context.user_id
    if context.bot_user_id:
        env[f"{ctx}BOT_USER_ID"] = context.bot_user_id
    return env


def check_binary(binary: str) -> str:
    """Resolve *binary* to an executable path.

    Raises:
        SpawnError: If the binary does not exist or is not on ``PATH``.
    """
    if os.path.isabs(binary):
        if not os.path.isfile(binary):
            msg = f"Generator binary not found: {binary}"
            raise SpawnError(msg)
        return binary
    resolved = shutil.which(binary)
    if resolved is None:
        msg = (
            f"Generator binary '{binary}' not found in PATH. "
            "Set generator.binary in tether.yaml or TETHER_GENERATOR_PATH "
            "to its full path."
        )
        raise SpawnError(msg)
    return resolved


class GenerationProcess:
    """A running generator subprocess.

    Stderr is drained concurrently and logged line by line so the child
    never blocks on a full pipe.
    """

    def __init__(self, proc: asyncio.subprocess.Process, label: str = "") -> None:
        self._proc = proc
        self._label = label or f"pid {proc.pid}"
        self._stderr_tail: collections.deque[str] = collections.deque(
            maxlen=_STDERR_TAIL_LINES
        )
        self._stderr_task: asyncio.Task[None] | None = None
        if proc.stderr is not None:
            self._stderr_task = asyncio.create_task(self._drain_stderr(proc.stderr))
        self.cancel_requested = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._proc.stdout

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    async def read_chunks(self) -> AsyncIterator[bytes]:
        """Yield raw stdout chunks until EOF."""
        if self._proc.stdout is None:
            return
        while True:
            chunk = await self._proc.stdout.read(_READ_CHUNK_BYTES)
            if not chunk:
                return
            yield chunk

    def cancel(self) -> None:
        """Send SIGTERM. The generator decides how to wind down."""
        self.cancel_requested = True
        if self._proc.returncode is not None:
            return
        logger.info("%s: sending SIGTERM to pid %d", self._label, self._proc.pid)
        with contextlib.suppress(ProcessLookupError):
            self._proc.send_signal(signal.SIGTERM)

    async def wait(self) -> ExitStatus:
        """Wait for exit and for stderr to be fully drained."""
        returncode = await self._proc.wait()
        if self._stderr_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
        status = ExitStatus.from_returncode(returncode)
        if returncode != 0 and not status.terminated:
            preview = format_stderr_preview(self.stderr_tail)
            logger.error(
                "%s: generator exited with code %d.%s",
                self._label,
                returncode,
                f" Stderr:\n  {preview}" if preview else "",
            )
        return status

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.warning("%s: stderr line exceeded buffer limit", self._label)
                continue
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                logger.warning("%s: generator stderr: %s", self._label, text)


class ProcessSupervisor:
    """Spawn generator subprocesses with the configured binary."""

    def __init__(self, config: GeneratorConfig | None = None) -> None:
        self._config = config or GeneratorConfig()

    @property
    def config(self) -> GeneratorConfig:
        return self._config

    async def spawn(
        self,
        args: Sequence[str],
        env: Mapping[str, str],
        cwd: Path | str,
        *,
        label: str = "",
    ) -> GenerationProcess:
        """Start the generator; stdin is closed from the start.

        Raises:
            SpawnError: If the binary is missing, not executable, or the
                OS refuses to start it.
        """
        binary = self._config.binary
        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_MAX_LINE_BYTES,
                env=dict(env),
                cwd=str(cwd),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            msg = f"Generator binary not found: {binary} (cwd={cwd})"
            raise SpawnError(msg) from exc
        except PermissionError as exc:
            msg = f"Generator binary not executable: {binary}"
            raise SpawnError(msg) from exc
        except OSError as exc:
            msg = f"Failed to spawn generator: {exc}"
            raise SpawnError(msg) from exc

        logger.info(
            "%s: generator started: pid=%d cwd=%s", label or "spawn", proc.pid, cwd
        )
        return GenerationProcess(proc, label=label)
