"""Run external commands with a hard timeout and bounded output capture."""

import asyncio
import os
import signal
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import structlog

from improver.config import Settings
from improver.errors import SandboxUnavailable, SpawnError
from improver.sandbox.docker import DockerSandbox, ResourceLimits
from improver.sandbox.termination import Phase, TerminationSequence

logger = structlog.get_logger()

DEFAULT_OUTPUT_LIMIT = 10 * 1024 * 1024
READ_CHUNK = 64 * 1024

# Variables inherited by unsandboxed commands; everything else is dropped.
PASSTHROUGH_ENV = ("PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "TERM")


@dataclass(frozen=True, slots=True)
class ProcessResult:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool
    truncated: bool
    duration: float
    termination: Phase
    sandboxed: bool

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class OutputBuffer:
    """stdout and stderr share one byte budget; excess is read and dropped."""

    def __init__(self, limit: int = DEFAULT_OUTPUT_LIMIT) -> None:
        self.limit = limit
        self.size = 0
        self.truncated = False
        self._chunks: dict[str, list[bytes]] = {"stdout": [], "stderr": []}

    def feed(self, stream: str, data: bytes) -> None:
        room = self.limit - self.size
        if len(data) > room:
            self.truncated = True
            data = data[: max(room, 0)]
        if data:
            self._chunks[stream].append(data)
            self.size += len(data)

    def text(self, stream: str) -> str:
        return b"".join(self._chunks[stream]).decode("utf-8", errors="replace")


class _ProcessGroup:
    """Signals the whole process group so grandchildren go down too."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        self.process = process

    def _signal(self, signum: int) -> None:
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.process.send_signal(signum)

    def terminate(self) -> None:
        self._signal(signal.SIGTERM)

    def kill(self) -> None:
        self._signal(signal.SIGKILL)


async def _pump(reader: asyncio.StreamReader | None, stream: str, buffer: OutputBuffer) -> None:
    if reader is None:
        return
    while True:
        chunk = await reader.read(READ_CHUNK)
        if not chunk:
            break
        buffer.feed(stream, chunk)


class ProcessSupervisor:
    """Sandboxed execution of shell commands inside a job workspace."""

    def __init__(
        self,
        docker: DockerSandbox | None = None,
        use_sandbox: bool = True,
        allow_unsandboxed: bool = False,
        default_limits: ResourceLimits | None = None,
        timeout: float = 600,
        grace: float = 5,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
    ) -> None:
        self.docker = docker or DockerSandbox()
        self.use_sandbox = use_sandbox
        self.allow_unsandboxed = allow_unsandboxed
        self.default_limits = default_limits or ResourceLimits()
        self.timeout = timeout
        self.grace = grace
        self.output_limit = output_limit

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProcessSupervisor":
        return cls(
            docker=DockerSandbox.from_settings(settings),
            use_sandbox=settings.use_sandbox,
            allow_unsandboxed=settings.unsandboxed_fallback_allowed,
            default_limits=ResourceLimits.from_settings(settings),
            timeout=settings.sandbox_timeout_seconds,
            grace=settings.sandbox_grace_seconds,
            output_limit=settings.sandbox_output_limit_bytes,
        )

    async def run(
        self,
        command: str,
        work_dir: Path,
        limits: ResourceLimits | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Run ``command`` through ``sh -c`` with ``work_dir`` as its working tree.

        A non-zero exit is reported in the result. Only a failure to start
        the process raises (``SpawnError``), and ``SandboxUnavailable`` when
        isolation is required but Docker cannot be used.
        """
        limits = limits or self.default_limits
        if timeout is None:
            timeout = self.timeout
        env = dict(env or {})
        base_env = {key: os.environ[key] for key in PASSTHROUGH_ENV if key in os.environ}

        if self.use_sandbox and await self.docker.is_available():
            container = f"improver-{uuid.uuid4().hex[:12]}"
            argv = self.docker.build_argv(command, work_dir, limits, env=env, name=container)
            return await self._execute(
                argv, cwd=None, env={**base_env, **env}, timeout=timeout, sandboxed=True, container=container
            )

        if not self.allow_unsandboxed:
            raise SandboxUnavailable("Docker is unavailable and unsandboxed execution is not allowed")

        logger.warning("Running command without sandbox", work_dir=str(work_dir))
        return await self._execute(
            ["sh", "-c", command], cwd=work_dir, env={**base_env, **env}, timeout=timeout, sandboxed=False
        )

    async def _execute(
        self,
        argv: list[str],
        cwd: Path | None,
        env: dict[str, str],
        timeout: float,
        sandboxed: bool,
        container: str | None = None,
    ) -> ProcessResult:
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start {argv[0]}: {e}") from e

        buffer = OutputBuffer(self.output_limit)
        readers = asyncio.gather(
            _pump(process.stdout, "stdout", buffer),
            _pump(process.stderr, "stderr", buffer),
        )
        sequence = TerminationSequence(_ProcessGroup(process))
        waiter = asyncio.ensure_future(process.wait())

        try:
            done, _ = await asyncio.wait({waiter}, timeout=timeout)
            if not done:
                logger.warning("Command timed out, terminating", timeout=timeout, sandboxed=sandboxed)
                sequence.timeout_elapsed()
                if container:
                    await self.docker.kill(container)
                done, _ = await asyncio.wait({waiter}, timeout=self.grace)
                if not done:
                    logger.warning("Command ignored SIGTERM, killing", grace=self.grace)
                    sequence.grace_elapsed()
                    await waiter
            sequence.exited()

            # Descendants that left the process group can keep the pipes open.
            _, pending = await asyncio.wait({readers}, timeout=max(self.grace, 1))
            if pending:
                readers.cancel()
        except asyncio.CancelledError:
            sequence.timeout_elapsed()
            sequence.grace_elapsed()
            readers.cancel()
            # Killing the docker client does not stop the container itself.
            if container:
                await self.docker.kill(container)
            raise
        finally:
            if process.returncode is None:
                _ProcessGroup(process).kill()

        duration = time.monotonic() - started
        if buffer.truncated:
            logger.warning("Command output truncated", limit_bytes=self.output_limit)
        logger.debug(
            "Command finished",
            exit_code=process.returncode,
            termination=sequence.phase.value,
            duration=round(duration, 3),
        )
        return ProcessResult(
            stdout=buffer.text("stdout"),
            stderr=buffer.text("stderr"),
            exit_code=process.returncode,
            timed_out=sequence.timed_out,
            truncated=buffer.truncated,
            duration=duration,
            termination=sequence.phase,
            sandboxed=sandboxed,
        )
