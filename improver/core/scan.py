"""Repository coverage scans and ranking of the files worth improving."""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime

import structlog

from improver.core.ports import CoverageRunner, FileCoverage, GitClient, HostingClient, RepositoryInfo
from improver.errors import JobValidationError
from improver.workspace import WorkspaceManager

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ScanResult:
    repository: RepositoryInfo
    files_scanned: int
    files_below_threshold: int
    threshold: float
    scanned_at: datetime


def validate_threshold(threshold: float) -> float:
    if not 0 <= threshold <= 100:
        raise JobValidationError(f"Threshold must be between 0 and 100, got {threshold}")
    return threshold


def prioritize(files: list[FileCoverage], threshold: float) -> list[FileCoverage]:
    """Files under ``threshold``, lowest coverage first and larger files first on ties."""
    validate_threshold(threshold)
    below = [row for row in files if row.percent < threshold]
    return sorted(below, key=lambda row: (row.percent, -row.total))


def lines_needed(row: FileCoverage, threshold: float) -> int:
    """Additional covered lines the file needs to reach ``threshold``."""
    validate_threshold(threshold)
    if row.percent >= threshold:
        return 0
    return max(0, math.ceil(threshold / 100 * row.total) - row.covered)


class RepositoryScanner:
    """Measures every file of a repository in a throwaway checkout."""

    def __init__(
        self,
        git: GitClient,
        hosting: HostingClient,
        coverage: CoverageRunner,
        workspaces: WorkspaceManager,
    ):
        self.git = git
        self.hosting = hosting
        self.coverage = coverage
        self.workspaces = workspaces

    async def scan(self, repository: RepositoryInfo) -> list[FileCoverage]:
        """Clone the default branch and run the coverage suite once.

        Raises:
            GitError: The clone failed
            CoverageError: No usable coverage summary was produced
        """
        url = self.hosting.authenticated_clone_url(repository.owner, repository.name)
        workspace = await asyncio.to_thread(self.workspaces.create, "scan")
        try:
            repo_dir = workspace / "repo"
            logger.info(
                "Scanning repository",
                repository=repository.id,
                url=self.hosting.safe_clone_url(repository.owner, repository.name),
            )
            await self.git.clone(url, repo_dir)
            summary = await self.coverage.run(repo_dir)
            return self.coverage.parse(summary, repo_dir)
        finally:
            await asyncio.to_thread(self.workspaces.cleanup, workspace)
