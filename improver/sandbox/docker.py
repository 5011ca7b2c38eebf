"""Docker isolation for external commands."""

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from improver.config import Settings

logger = structlog.get_logger()

CONTAINER_WORKDIR = "/workspace"
CONTAINER_USER = "1000:1000"


class NetworkMode(str, Enum):
    NONE = "none"
    RESTRICTED = "restricted"
    FULL = "full"


@dataclass(frozen=True, slots=True)
class ResourceLimits:
    """Per-run container limits."""

    memory_mb: int = 1024
    cpus: float = 1.0
    pids_limit: int = 256
    scratch_mb: int = 100
    network: NetworkMode = NetworkMode.RESTRICTED

    @classmethod
    def from_settings(cls, settings: Settings) -> "ResourceLimits":
        return cls(
            memory_mb=settings.sandbox_memory_mb,
            cpus=settings.sandbox_cpus,
            pids_limit=settings.sandbox_pids_limit,
            scratch_mb=settings.sandbox_scratch_mb,
            network=NetworkMode(settings.sandbox_network_mode),
        )


class DockerSandbox:
    """Builds ``docker run`` invocations and checks the local daemon."""

    def __init__(
        self,
        image: str = "node:20-alpine",
        restricted_network: str = "improver-egress",
        docker_bin: str = "docker",
    ) -> None:
        self.image = image
        self.restricted_network = restricted_network
        self.docker_bin = docker_bin
        self._available: bool | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "DockerSandbox":
        return cls(image=settings.sandbox_image, restricted_network=settings.sandbox_restricted_network)

    def network_name(self, mode: NetworkMode) -> str:
        if mode is NetworkMode.NONE:
            return "none"
        if mode is NetworkMode.RESTRICTED:
            return self.restricted_network
        return "bridge"

    def build_argv(
        self,
        command: str,
        work_dir: Path,
        limits: ResourceLimits,
        env: Mapping[str, str] | None = None,
        name: str | None = None,
    ) -> list[str]:
        """Argument vector for running ``command`` with ``work_dir`` mounted.

        Environment variables are passed by name only; their values come from
        the docker client's own environment so they never appear in argv.
        """
        argv = [
            self.docker_bin,
            "run",
            "--rm",
            "--read-only",
            "--tmpfs",
            f"/tmp:rw,noexec,nosuid,size={limits.scratch_mb}m",
            "--memory",
            f"{limits.memory_mb}m",
            "--cpus",
            str(limits.cpus),
            "--pids-limit",
            str(limits.pids_limit),
            "--network",
            self.network_name(limits.network),
            "--security-opt",
            "no-new-privileges",
            "--cap-drop",
            "ALL",
            "--user",
            CONTAINER_USER,
            "-v",
            f"{Path(work_dir).resolve()}:{CONTAINER_WORKDIR}:rw",
            "-w",
            CONTAINER_WORKDIR,
        ]
        if name:
            argv += ["--name", name]
        for key in sorted(env or {}):
            argv += ["-e", key]
        argv += [self.image, "sh", "-c", command]
        return argv

    async def _exec(self, *args: str, timeout: float = 30) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            self.docker_bin,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, "timed out"
        return process.returncode, output.decode("utf-8", errors="replace").strip()

    async def is_available(self) -> bool:
        """Check the docker client and daemon once; the answer is cached."""
        if self._available is None:
            try:
                code, output = await self._exec("version", "--format", "{{.Server.Version}}", timeout=10)
            except OSError as e:
                code, output = -1, str(e)
            self._available = code == 0
            if self._available:
                logger.debug("Docker available", server_version=output)
            else:
                logger.warning("Docker is not available", error=output)
        return self._available

    async def ensure_image(self) -> None:
        """Pull the sandbox image unless it is present locally."""
        code, _ = await self._exec("image", "inspect", self.image)
        if code == 0:
            logger.debug("Docker image already available", image=self.image)
            return
        logger.info("Pulling Docker image", image=self.image)
        code, output = await self._exec("pull", self.image, timeout=600)
        if code != 0:
            logger.error("Failed to pull Docker image", image=self.image, error=output)

    async def kill(self, name: str) -> None:
        """Best-effort kill of a named container; the client may already be gone."""
        try:
            code, output = await self._exec("kill", name, timeout=10)
        except OSError as e:
            code, output = -1, str(e)
        if code != 0:
            logger.debug("Container kill failed", container=name, error=output)
