"""Run a repository's test suite with coverage and read the summary."""

import json
from pathlib import Path, PurePosixPath

import structlog

from improver.config import Settings
from improver.core.ports import FileCoverage, normalize_path
from improver.errors import CoverageError, SandboxError
from improver.sandbox import ProcessSupervisor
from improver.sandbox.docker import CONTAINER_WORKDIR

logger = structlog.get_logger()

INSTALL_COMMAND = "npm ci || npm install"


class CoverageTool:
    """Coverage runner for istanbul-style ``coverage-summary.json`` reports."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        command: str,
        summary_path: str = "coverage/coverage-summary.json",
        timeout: float = 900,
    ) -> None:
        self.supervisor = supervisor
        self.command = command
        self.summary_path = summary_path
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, supervisor: ProcessSupervisor) -> "CoverageTool":
        return cls(
            supervisor,
            command=settings.coverage_command,
            summary_path=settings.coverage_summary_path,
            timeout=settings.coverage_timeout_seconds,
        )

    def build_command(self, repo_dir: Path) -> str:
        """Coverage command for this checkout, installing dependencies first if needed."""
        command = self.command
        manifest = repo_dir / "package.json"
        if manifest.is_file():
            try:
                scripts = json.loads(manifest.read_text(encoding="utf-8")).get("scripts") or {}
            except (OSError, ValueError, AttributeError):
                logger.warning("Could not read package.json")
                scripts = {}
            if "coverage" in scripts:
                command = "npm run coverage"
            if not (repo_dir / "node_modules").exists():
                command = f"({INSTALL_COMMAND}) && {command}"
        return command

    async def run(self, repo_dir: Path) -> Path:
        """Run the suite and return the summary location.

        Failing tests are fine as long as a summary was written.

        Raises:
            CoverageError: The command could not run, timed out, or left no summary
        """
        command = self.build_command(repo_dir)
        logger.info("Running coverage", command=command)
        try:
            result = await self.supervisor.run(
                command, repo_dir, timeout=self.timeout, env={"NODE_ENV": "test"}
            )
        except SandboxError as e:
            raise CoverageError(f"Coverage command could not run: {e}") from e

        if result.timed_out:
            raise CoverageError(f"Coverage command timed out after {self.timeout}s")
        if not result.ok:
            logger.warning("Coverage command exited with failures", exit_code=result.exit_code)

        summary = repo_dir / self.summary_path
        if not summary.is_file():
            raise CoverageError(f"Coverage summary not found at {self.summary_path} (exit code {result.exit_code})")
        return summary

    def parse(self, summary: Path, repo_dir: Path | None = None) -> list[FileCoverage]:
        """Per-file line coverage, paths relative to the repository root."""
        try:
            data = json.loads(Path(summary).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise CoverageError(f"Failed to parse coverage summary: {e}") from e
        if not isinstance(data, dict):
            raise CoverageError("Failed to parse coverage summary: not an object")

        results = []
        for file_path, entry in data.items():
            if file_path == "total" or not isinstance(entry, dict):
                continue
            lines = entry.get("lines")
            if not isinstance(lines, dict):
                lines = {}
            try:
                row = FileCoverage(
                    file_path=self.relative_path(file_path, repo_dir),
                    percent=float(lines.get("pct") or 0),
                    covered=int(lines.get("covered") or 0),
                    total=int(lines.get("total") or 0),
                )
            except (TypeError, ValueError):
                # istanbul reports "Unknown" for files without statements.
                logger.warning("Skipping unreadable coverage entry", file=file_path, pct=lines.get("pct"))
                continue
            results.append(row)
        logger.info("Parsed coverage summary", files=len(results))
        return results

    @staticmethod
    def relative_path(file_path: str, repo_dir: Path | None = None) -> str:
        path = normalize_path(file_path)
        roots = [CONTAINER_WORKDIR]
        if repo_dir is not None:
            roots.insert(0, Path(repo_dir).resolve().as_posix())
        for root in roots:
            try:
                return PurePosixPath(path).relative_to(root).as_posix()
            except ValueError:
                continue
        return path
