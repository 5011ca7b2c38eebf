"""Tests for the process supervisor.

These run real shell commands without Docker.
"""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from improver.errors import SandboxUnavailable, SpawnError
from improver.sandbox import DockerSandbox, OutputBuffer, Phase, ProcessSupervisor


@pytest.fixture
def supervisor() -> ProcessSupervisor:
    return ProcessSupervisor(use_sandbox=False, allow_unsandboxed=True, timeout=10, grace=1)


@pytest.mark.asyncio
async def test_captures_output_and_exit_code(supervisor, tmp_path: Path) -> None:
    result = await supervisor.run("echo hello; echo oops >&2; exit 3", tmp_path)

    assert result.stdout.strip() == "hello"
    assert result.stderr.strip() == "oops"
    assert result.exit_code == 3
    assert not result.ok
    assert not result.timed_out
    assert result.termination is Phase.EXITED
    assert result.sandboxed is False


@pytest.mark.asyncio
async def test_runs_in_work_dir(supervisor, tmp_path: Path) -> None:
    result = await supervisor.run("pwd", tmp_path)

    assert result.ok
    assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()


@pytest.mark.asyncio
async def test_timeout_terminates_process(supervisor, tmp_path: Path) -> None:
    result = await supervisor.run("sleep 30", tmp_path, timeout=0.5)

    assert result.timed_out
    assert result.exit_code is not None and result.exit_code < 0
    assert result.termination is Phase.TERMINATED
    assert result.duration < 10


@pytest.mark.asyncio
async def test_ignored_sigterm_escalates_to_kill(supervisor, tmp_path: Path) -> None:
    result = await supervisor.run("trap '' TERM; sleep 30", tmp_path, timeout=0.5)

    assert result.timed_out
    assert result.termination is Phase.KILLED
    assert result.exit_code == -9


@pytest.mark.asyncio
async def test_output_is_capped(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(use_sandbox=False, allow_unsandboxed=True, output_limit=1024)

    result = await supervisor.run("yes | head -c 100000", tmp_path)

    assert result.ok
    assert result.truncated
    assert len(result.stdout) == 1024


@pytest.mark.asyncio
async def test_environment_is_not_inherited(supervisor, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_should_not_leak")

    result = await supervisor.run('echo "$AI_CLI_KEY:${GITHUB_TOKEN:-unset}"', tmp_path, env={"AI_CLI_KEY": "k"})

    assert result.stdout.strip() == "k:unset"


@pytest.mark.asyncio
async def test_missing_docker_without_fallback_is_refused(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(docker=DockerSandbox(docker_bin="improver-no-such-docker"))

    with pytest.raises(SandboxUnavailable):
        await supervisor.run("echo hi", tmp_path)


@pytest.mark.asyncio
async def test_missing_docker_with_fallback_runs_directly(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(docker=DockerSandbox(docker_bin="improver-no-such-docker"), allow_unsandboxed=True)

    result = await supervisor.run("echo hi", tmp_path)

    assert result.ok
    assert result.sandboxed is False


@pytest.mark.asyncio
async def test_sandboxed_run_uses_docker_argv(tmp_path: Path) -> None:
    docker = MagicMock()
    docker.is_available = AsyncMock(return_value=True)
    docker.build_argv.return_value = ["sh", "-c", "echo from-container"]
    supervisor = ProcessSupervisor(docker=docker)

    result = await supervisor.run("npm test", tmp_path, env={"AI_CLI_KEY": "k"})

    assert result.sandboxed is True
    assert result.stdout.strip() == "from-container"
    command, work_dir, _limits = docker.build_argv.call_args.args
    assert (command, work_dir) == ("npm test", tmp_path)
    assert docker.build_argv.call_args.kwargs["env"] == {"AI_CLI_KEY": "k"}
    assert docker.build_argv.call_args.kwargs["name"].startswith("improver-")


@pytest.mark.asyncio
async def test_spawn_failure_raises(supervisor, tmp_path: Path) -> None:
    with pytest.raises(SpawnError):
        await supervisor.run("echo hi", tmp_path / "missing")


def test_output_buffer_shares_budget() -> None:
    buffer = OutputBuffer(limit=8)

    buffer.feed("stdout", b"12345")
    buffer.feed("stderr", b"67890")
    buffer.feed("stdout", b"more")

    assert buffer.text("stdout") == "12345"
    assert buffer.text("stderr") == "678"
    assert buffer.truncated


@pytest.mark.asyncio
async def test_zero_timeout_is_honoured(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(use_sandbox=False, allow_unsandboxed=True, timeout=60, grace=1)

    result = await supervisor.run("sleep 5", tmp_path, timeout=0)

    assert result.timed_out
    assert result.duration < 5


@pytest.mark.asyncio
async def test_cancelled_sandboxed_run_kills_container(tmp_path: Path) -> None:
    docker = MagicMock()
    docker.is_available = AsyncMock(return_value=True)
    docker.build_argv.return_value = ["sh", "-c", "sleep 30"]
    docker.kill = AsyncMock()
    supervisor = ProcessSupervisor(docker=docker, grace=1)

    task = asyncio.create_task(supervisor.run("npm test", tmp_path))
    await asyncio.sleep(0.2)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    container = docker.build_argv.call_args.kwargs["name"]
    docker.kill.assert_awaited_once_with(container)
