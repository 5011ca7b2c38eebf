"""Use cases behind the API and CLI: scan repositories, request, inspect and retry jobs."""

import asyncio
import uuid
from collections.abc import Callable

import structlog

from improver.core.job import ImprovementJob, utcnow
from improver.core.ports import (
    CoverageStore,
    FileCoverage,
    HostingClient,
    JobStore,
    RepositoryDirectory,
    normalize_path,
)
from improver.core.scan import RepositoryScanner, ScanResult, prioritize, validate_threshold
from improver.errors import (
    FileNotEligible,
    ImproverError,
    JobNotFound,
    JobValidationError,
    RepositoryNotScanned,
)

logger = structlog.get_logger()


def _require(**values: str) -> None:
    for name, value in values.items():
        if not value or not value.strip():
            raise JobValidationError(f"{name} must not be blank")


class JobService:
    def __init__(
        self,
        store: JobStore,
        repositories: RepositoryDirectory,
        hosting: HostingClient,
        coverage_files: CoverageStore,
        scanner: RepositoryScanner | None = None,
        threshold: float = 80.0,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.store = store
        self.repositories = repositories
        self.hosting = hosting
        self.coverage_files = coverage_files
        self.scanner = scanner
        self.threshold = validate_threshold(threshold)
        self.id_factory = id_factory

    async def scan_repository(self, owner: str, repo: str) -> ScanResult:
        """Measure every file of ``owner/repo`` and replace its stored coverage.

        Raises:
            RepositoryLookupError: The hosting service does not know the repository
            GitError: The repository could not be cloned
            CoverageError: The coverage suite produced no usable summary
        """
        _require(owner=owner, repo=repo)
        if self.scanner is None:
            raise ImproverError("Repository scanning is not configured")

        info = await self.hosting.get_repository(owner, repo)
        await asyncio.to_thread(self.repositories.save, info)

        files = await self.scanner.scan(info)
        scanned_at = utcnow()
        await asyncio.to_thread(self.coverage_files.replace, info.id, files, scanned_at)

        below = len(prioritize(files, self.threshold))
        logger.info("Repository scanned", repository=info.id, files=len(files), below_threshold=below)
        return ScanResult(
            repository=info,
            files_scanned=len(files),
            files_below_threshold=below,
            threshold=self.threshold,
            scanned_at=scanned_at,
        )

    def list_coverage_files(self, owner: str, repo: str, threshold: float | None = None) -> list[FileCoverage]:
        """Stored coverage of a scanned repository.

        With a ``threshold`` only the files under it are returned, ranked by
        improvement priority; otherwise every file, lowest coverage first.
        """
        _require(owner=owner, repo=repo)
        repository_id = f"{owner}/{repo}"
        if self.coverage_files.last_scanned_at(repository_id) is None:
            raise RepositoryNotScanned(f"Repository {repository_id} has no coverage data. Please scan it first.")

        files = self.coverage_files.list_files(repository_id)
        if threshold is None:
            return files
        return prioritize(files, validate_threshold(threshold))

    async def request_improvement(
        self, owner: str, repo: str, file_path: str, requested_by: str
    ) -> ImprovementJob:
        """Queue a coverage improvement for ``file_path`` in ``owner/repo``.

        Only files the latest scan measured below the threshold are accepted.

        Raises:
            JobValidationError: A required value is blank
            FileNotEligible: The file is not in the scan data or already meets the threshold
            RepositoryLookupError: The hosting service does not know the repository
        """
        _require(owner=owner, repo=repo, file_path=file_path, requested_by=requested_by)
        path = normalize_path(file_path)

        info = await self.hosting.get_repository(owner, repo)
        await asyncio.to_thread(self.repositories.save, info)

        row = await asyncio.to_thread(self.coverage_files.get_file, info.id, path)
        if row is None:
            raise FileNotEligible(f"File {path} not found in repository coverage data.")
        if row.percent >= self.threshold:
            raise FileNotEligible(
                f"File {path} is already above threshold ({row.percent:g}% >= {self.threshold:g}%)"
            )

        job = ImprovementJob.create(
            id=self.id_factory(),
            repository_id=info.id,
            file_path=path,
            requested_by=requested_by,
        )
        await asyncio.to_thread(self.store.create, job)
        logger.info("Improvement requested", job_id=job.id, repository=info.id, file=job.file_path)
        return job

    def get_job(self, job_id: str) -> ImprovementJob:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return job

    def list_jobs(self, repository_id: str | None = None, limit: int = 50) -> list[ImprovementJob]:
        return self.store.list_jobs(repository_id=repository_id, limit=limit)

    def retry_job(self, job_id: str) -> ImprovementJob:
        """Put a FAILED job back in the queue; other statuses raise ``InvalidTransition``."""
        job = self.get_job(job_id).retry()
        self.store.update(job)
        logger.info("Job retry requested", job_id=job.id, attempts=job.attempt_count)
        return job
