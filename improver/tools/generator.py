"""AI test generation through an external CLI."""

import re
import shlex
from pathlib import Path

import structlog

from improver.config import Settings
from improver.core.ports import GenerationResult
from improver.errors import SandboxTimeout
from improver.log import redact
from improver.sandbox import ProcessSupervisor, ResourceLimits

logger = structlog.get_logger()

_CREATED = re.compile(r"^\s*(?:Generated|Created|Written):\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_MODIFIED = re.compile(r"^\s*(?:Modified|Updated):\s*(.+?)\s*$", re.IGNORECASE | re.MULTILINE)
_QUOTED_TEST = re.compile(r"""['"]([^'"\s]+\.(?:test|spec)\.[^'"\s]+)['"]""")


def render_command(template: str, target_file: str, context_files: list[str]) -> str:
    """Fill ``{FILE}``/``{TARGET}`` and append ``--context`` unless the template has it."""
    quoted = shlex.quote(target_file)
    command = template.replace("{FILE}", quoted).replace("{TARGET}", quoted)
    if context_files and "--context" not in command:
        command += " --context " + " ".join(shlex.quote(path) for path in context_files)
    return command


def parse_output(stdout: str) -> tuple[list[str], list[str]]:
    """Pull created and modified file paths out of the CLI's report."""
    created: list[str] = []
    modified: list[str] = []
    for match in _CREATED.finditer(stdout):
        if match.group(1) not in created:
            created.append(match.group(1))
    for match in _QUOTED_TEST.finditer(stdout):
        if match.group(1) not in created:
            created.append(match.group(1))
    for match in _MODIFIED.finditer(stdout):
        if match.group(1) not in modified and match.group(1) not in created:
            modified.append(match.group(1))
    return created, modified


class CliTestGenerator:
    """Runs the configured AI CLI against a checkout inside the sandbox."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        command_template: str,
        api_key: str | None = None,
        limits: ResourceLimits | None = None,
        timeout: float | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.command_template = command_template
        self.api_key = api_key
        self.limits = limits
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, supervisor: ProcessSupervisor) -> "CliTestGenerator":
        return cls(
            supervisor,
            command_template=settings.ai_cli_command,
            api_key=settings.ai_cli_key,
            limits=ResourceLimits.from_settings(settings),
            timeout=settings.sandbox_timeout_seconds,
        )

    async def generate(self, repo_dir: Path, target_file: str, context_files: list[str]) -> GenerationResult:
        """Generate tests for ``target_file``.

        Args:
            repo_dir: Checkout the CLI works in
            target_file: File to cover, relative to the repository root
            context_files: Extra files handed to the CLI

        Returns:
            Created and modified files, or the failure reason

        Raises:
            SandboxTimeout: The CLI did not finish within the time budget
        """
        command = render_command(self.command_template, target_file, context_files)
        env = {"AI_CLI_KEY": self.api_key} if self.api_key else {}
        logger.info("Generating tests", target=target_file, context_files=len(context_files))

        result = await self.supervisor.run(command, repo_dir, limits=self.limits, timeout=self.timeout, env=env)

        if result.timed_out:
            raise SandboxTimeout(f"AI CLI timed out after {result.duration:.0f}s ({result.termination.value})")
        if result.exit_code != 0:
            reason = result.stderr.strip() or result.stdout.strip() or f"exit code {result.exit_code}"
            logger.error("Test generation failed", exit_code=result.exit_code)
            return GenerationResult.failure(redact(reason[-2000:]))

        created, modified = parse_output(result.stdout)
        outcome = GenerationResult.success(created, modified)
        logger.info("Test generation completed", summary=outcome.summary, duration=round(result.duration, 1))
        return outcome
