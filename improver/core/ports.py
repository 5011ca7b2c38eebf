"""Contracts for the collaborators the job engine depends on."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from improver.core.job import ImprovementJob
from improver.core.lock import RepositoryLock


@dataclass(frozen=True, slots=True)
class RepositoryInfo:
    """A hosted repository as the pipeline needs it."""

    owner: str
    name: str
    clone_url: str
    default_branch: str

    @property
    def id(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True, slots=True)
class PullRequestInfo:
    url: str
    number: int


@dataclass(frozen=True, slots=True)
class FileCoverage:
    """Line coverage for one file, path relative to the repository root."""

    file_path: str
    percent: float
    covered: int
    total: int


@dataclass(frozen=True, slots=True)
class GenerationResult:
    """Normalised outcome of one AI generation run."""

    created_files: tuple[str, ...] = field(default_factory=tuple)
    modified_files: tuple[str, ...] = field(default_factory=tuple)
    error: str | None = None

    @classmethod
    def success(cls, created: list[str], modified: list[str]) -> "GenerationResult":
        return cls(tuple(created), tuple(modified), None)

    @classmethod
    def failure(cls, error: str) -> "GenerationResult":
        return cls((), (), error or "Unknown error")

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def has_changes(self) -> bool:
        return bool(self.created_files or self.modified_files)

    @property
    def summary(self) -> str:
        if self.failed:
            return f"Failed: {self.error}"
        return f"{len(self.created_files)} files created, {len(self.modified_files)} files modified"


class JobStore(Protocol):
    """Durable job records, including the atomic repository lock."""

    def create(self, job: ImprovementJob) -> None: ...

    def update(self, job: ImprovementJob) -> None: ...

    def get(self, job_id: str) -> ImprovementJob | None: ...

    def list_executable(self) -> list[ImprovementJob]:
        """PENDING and RETRY jobs, oldest first."""
        ...

    def list_jobs(self, repository_id: str | None = None, limit: int = 50) -> list[ImprovementJob]: ...

    def try_acquire_lock(self, job_id: str, branch_name: str) -> ImprovementJob | None:
        """Atomically move the job to RUNNING unless its repository is busy.

        Returns the RUNNING revision, or ``None`` if the lock was refused.
        """
        ...

    def current_lock(self, repository_id: str) -> RepositoryLock | None: ...


class RepositoryDirectory(Protocol):
    """Known repositories, keyed by ``owner/name``."""

    def get(self, repository_id: str) -> RepositoryInfo | None: ...

    def save(self, info: RepositoryInfo) -> None: ...


class CoverageStore(Protocol):
    """Per-file coverage from the latest scan of each repository."""

    def replace(self, repository_id: str, files: list[FileCoverage], measured_at: datetime | None = None) -> None: ...

    def list_files(self, repository_id: str, below: float | None = None) -> list[FileCoverage]: ...

    def get_file(self, repository_id: str, file_path: str) -> FileCoverage | None: ...

    def last_scanned_at(self, repository_id: str) -> datetime | None: ...


class GitClient(Protocol):
    async def clone(self, url: str, dest: Path) -> None: ...

    async def checkout_new_branch(self, repo_dir: Path, name: str) -> None: ...

    async def commit_all(self, repo_dir: Path, message: str) -> None: ...

    async def push(self, repo_dir: Path, branch: str) -> None: ...


class HostingClient(Protocol):
    async def get_repository(self, owner: str, name: str) -> RepositoryInfo: ...

    async def create_pull_request(
        self, owner: str, repo: str, head: str, base: str, title: str, body: str
    ) -> PullRequestInfo: ...

    def authenticated_clone_url(self, owner: str, repo: str) -> str:
        """Clone URL carrying credentials; never logged."""
        ...

    def safe_clone_url(self, owner: str, repo: str) -> str: ...


class CoverageRunner(Protocol):
    async def run(self, repo_dir: Path) -> Path:
        """Run the test suite with coverage, returning the summary location."""
        ...

    def parse(self, summary: Path, repo_dir: Path | None = None) -> list[FileCoverage]: ...


class TestGenerator(Protocol):
    async def generate(
        self, repo_dir: Path, target_file: str, context_files: list[str]
    ) -> GenerationResult: ...


def normalize_path(file_path: str) -> str:
    """``./src/a.ts`` and ``src\\a.ts`` both become ``src/a.ts``."""
    path = file_path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path
