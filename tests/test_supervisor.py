"""Tests for the generator process supervisor."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from tether.config.models import GeneratorConfig
from tether.supervisor import (
    STREAM_FLAGS,
    ExitStatus,
    GenerationProcess,
    ProcessSupervisor,
    SpawnContext,
    SpawnError,
    build_args,
    build_env,
    check_binary,
    format_stderr_preview,
)

# ------------------------------------------------------------------ #
# Argument and environment construction
# ------------------------------------------------------------------ #


class TestBuildArgs:
    def test_new_session(self) -> None:
        args = build_args("hello", "tok-1", is_resume=False)
        assert args[:2] == ["-p", "hello"]
        assert args[2 : 2 + len(STREAM_FLAGS)] == list(STREAM_FLAGS)
        assert args[-2:] == ["--session-id", "tok-1"]

    def test_resume(self) -> None:
        args = build_args("hello", "tok-1", is_resume=True)
        assert args[-2:] == ["--resume", "tok-1"]
        assert "--session-id" not in args

    def test_additional_args_after_flags(self) -> None:
        args = build_args("hi", "t", is_resume=False, additional_args=["--model", "opus"])
        model_at = args.index("--model")
        assert model_at > args.index("--include-partial-messages")
        assert args[model_at + 1] == "opus"

    def test_conventions_appended_to_system_prompt(self) -> None:
        args = build_args(
            "hi", "t", is_resume=False, conventions=["Use type hints.", "Run tests."]
        )
        at = args.index("--append-system-prompt")
        assert args[at + 1] == "\nTeam conventions:\n- Use type hints.\n- Run tests."

    def test_no_conventions_no_flag(self) -> None:
        assert "--append-system-prompt" not in build_args("hi", "t", is_resume=False)


class TestBuildEnv:
    def test_nested_marker_dropped(self) -> None:
        env = build_env({"CLAUDECODE": "1", "PATH": "/bin"}, SpawnContext("t1"))
        assert "CLAUDECODE" not in env
        assert env["PATH"] == "/bin"

    def test_prefixed_vars_reexported(self) -> None:
        env = build_env({"ENV_GITHUB_TOKEN": "secret"}, SpawnContext("t1"))
        assert env["GITHUB_TOKEN"] == "secret"
        assert env["ENV_GITHUB_TOKEN"] == "secret"

    def test_bare_prefix_ignored(self) -> None:
        env = build_env({"ENV_": "x"}, SpawnContext("t1"))
        assert "" not in env

    def test_context_injected(self) -> None:
        env = build_env(
            {},
            SpawnContext(thread_key="t1", scope_id="C1", user_id="U1", bot_user_id="B1"),
        )
        assert env["TETHER_THREAD_KEY"] == "t1"
        assert env["TETHER_SCOPE_ID"] == "C1"
        assert env["TETHER_USER_ID"] == "U1"
        assert env["TETHER_BOT_USER_ID"] == "B1"

    def test_missing_context_not_injected(self) -> None:
        env = build_env({}, SpawnContext(thread_key="t1"))
        assert "TETHER_SCOPE_ID" not in env
        assert "TETHER_USER_ID" not in env

    def test_custom_config(self) -> None:
        config = GeneratorConfig(
            stripped_env=["SLACK_BOT_TOKEN"], env_prefix="PASS_", context_prefix="BOT_"
        )
        env = build_env(
            {"SLACK_BOT_TOKEN": "xoxb", "PASS_KEY": "v"}, SpawnContext("t1"), config
        )
        assert "SLACK_BOT_TOKEN" not in env
        assert env["KEY"] == "v"
        assert env["BOT_THREAD_KEY"] == "t1"


class TestCheckBinary:
    def test_absolute_path(self) -> None:
        assert check_binary(sys.executable) == sys.executable

    def test_missing_absolute_path(self, tmp_path: Path) -> None:
        with pytest.raises(SpawnError, match="not found"):
            check_binary(str(tmp_path / "nope"))

    def test_missing_on_path(self) -> None:
        with pytest.raises(SpawnError, match="TETHER_GENERATOR_PATH"):
            check_binary("definitely-not-a-real-generator-binary")


class TestExitStatus:
    def test_clean_exit(self) -> None:
        status = ExitStatus.from_returncode(0)
        assert status.code == 0
        assert status.returncode == 0
        assert status.terminated is False

    def test_killed_by_sigterm(self) -> None:
        status = ExitStatus.from_returncode(-signal.SIGTERM)
        assert status.code is None
        assert status.signal == signal.SIGTERM
        assert status.terminated is True
        assert status.returncode == -signal.SIGTERM

    def test_killed_by_other_signal(self) -> None:
        assert ExitStatus.from_returncode(-signal.SIGKILL).terminated is False


def test_format_stderr_preview() -> None:
    text = "\n".join(f"line {i}" for i in range(10)) + "\n\n"
    assert format_stderr_preview(text, max_lines=2) == "line 8\n  line 9"


# ------------------------------------------------------------------ #
# Spawning
# ------------------------------------------------------------------ #


class TestSpawnFailures:
    async def test_file_not_found(self, tmp_path: Path) -> None:
        supervisor = ProcessSupervisor(GeneratorConfig(binary="claude"))
        with patch(
            "asyncio.create_subprocess_exec",
            new_callable=AsyncMock,
            side_effect=FileNotFoundError("claude"),
        ):
            with pytest.raises(SpawnError, match="not found"):
                await supervisor.spawn(["-p", "x"], {}, tmp_path)

    async def test_permission_denied(self, tmp_path: Path) -> None:
        supervisor = ProcessSupervisor()
        with patch(
            "asyncio.create_subprocess_exec",
            new_callable=AsyncMock,
            side_effect=PermissionError("denied"),
        ):
            with pytest.raises(SpawnError, match="not executable"):
                await supervisor.spawn([], {}, tmp_path)

    async def test_spawn_options(self, tmp_path: Path) -> None:
        proc = MagicMock()
        proc.pid = 123
        proc.stderr = None
        supervisor = ProcessSupervisor(GeneratorConfig(binary="gen"))
        with patch(
            "asyncio.create_subprocess_exec", new_callable=AsyncMock, return_value=proc
        ) as mock_exec:
            process = await supervisor.spawn(["-p", "x"], {"A": "1"}, tmp_path, label="t1")

        assert process.pid == 123
        args, kwargs = mock_exec.call_args
        assert args == ("gen", "-p", "x")
        assert kwargs["stdin"] == asyncio.subprocess.DEVNULL
        assert kwargs["env"] == {"A": "1"}
        assert kwargs["cwd"] == str(tmp_path)
        assert kwargs["start_new_session"] is True


class TestRealProcess:
    """Spawn the running interpreter as a stand-in generator."""

    def _supervisor(self) -> ProcessSupervisor:
        return ProcessSupervisor(GeneratorConfig(binary=sys.executable))

    async def test_reads_stdout_and_exit_code(self, tmp_path: Path) -> None:
        script = "import sys; print('{\"type\":\"x\"}'); sys.stderr.write('warn\\n'); sys.exit(3)"
        process = await self._supervisor().spawn(["-c", script], dict(os.environ), tmp_path)
        output = b"".join([chunk async for chunk in process.read_chunks()])
        status = await process.wait()

        assert output == b'{"type":"x"}\n'
        assert status.code == 3
        assert process.stderr_tail == "warn"

    async def test_cancel_sends_sigterm(self, tmp_path: Path) -> None:
        script = "import time; print('started', flush=True); time.sleep(30)"
        process = await self._supervisor().spawn(["-c", script], dict(os.environ), tmp_path)
        first = await process.stdout.readline()
        assert first == b"started\n"

        process.cancel()
        status = await asyncio.wait_for(process.wait(), timeout=10)
        assert process.cancel_requested is True
        assert status.terminated is True

    async def test_cancel_after_exit_is_harmless(self, tmp_path: Path) -> None:
        process = await self._supervisor().spawn(["-c", "pass"], dict(os.environ), tmp_path)
        await process.wait()
        process.cancel()
        assert process.returncode == 0


def test_generation_process_without_pipes() -> None:
    proc = MagicMock()
    proc.stderr = None
    proc.pid = 7
    process = GenerationProcess(proc, label="t1")
    assert process.stderr_tail == ""
    assert process.pid == 7
