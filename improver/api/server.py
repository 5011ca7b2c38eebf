"""FastAPI application with REST endpoints."""

from datetime import datetime, timezone
from functools import lru_cache

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from improver import __version__
from improver.api.models import (
    CoverageListResponse,
    FileCoverageResponse,
    ImproveRequest,
    JobCreate,
    JobResponse,
    ScanResponse,
)
from improver.config import get_settings
from improver.core.scan import RepositoryScanner
from improver.core.service import JobService
from improver.db import SqlCoverageStore, SqlJobStore, SqlRepositoryDirectory, init_db, make_engine
from improver.errors import (
    CoverageError,
    GitError,
    InvalidTransition,
    JobNotFound,
    JobValidationError,
    RepositoryLookupError,
    RepositoryNotScanned,
)
from improver.sandbox import ProcessSupervisor
from improver.tools import CoverageTool, LocalGit, get_github_client
from improver.workspace import WorkspaceManager

logger = structlog.get_logger()

app = FastAPI(
    title="Coverage Improver",
    description="Scan repositories, queue and track automated test coverage improvements",
    version=__version__,
)


@lru_cache
def get_job_service() -> JobService:
    """Service wired from settings; overridden in tests."""
    settings = get_settings()
    engine = make_engine(settings.database_url)
    init_db(engine)
    hosting = get_github_client()
    scanner = RepositoryScanner(
        git=LocalGit(),
        hosting=hosting,
        coverage=CoverageTool.from_settings(settings, ProcessSupervisor.from_settings(settings)),
        workspaces=WorkspaceManager(settings.workspace_base_dir),
    )
    return JobService(
        SqlJobStore(engine),
        SqlRepositoryDirectory(engine),
        hosting,
        SqlCoverageStore(engine),
        scanner=scanner,
        threshold=settings.coverage_threshold,
    )


@app.exception_handler(JobNotFound)
@app.exception_handler(RepositoryNotScanned)
async def _not_found(request: Request, exc: LookupError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(JobValidationError)
async def _invalid_job(request: Request, exc: JobValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(RepositoryLookupError)
async def _repository_lookup_failed(request: Request, exc: RepositoryLookupError) -> JSONResponse:
    logger.error("Repository lookup failed", error=str(exc))
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(GitError)
@app.exception_handler(CoverageError)
async def _scan_failed(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Coverage scan failed", error=str(exc), error_type=type(exc).__name__)
    return JSONResponse(status_code=502, content={"detail": f"Coverage scan failed: {exc}"})


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.post("/api/v1/jobs", response_model=JobResponse, status_code=201)
async def create_job(body: JobCreate, service: JobService = Depends(get_job_service)) -> JobResponse:
    """Queue a coverage improvement job."""
    job = await service.request_improvement(body.owner, body.name, body.file_path, body.requested_by)
    return JobResponse.from_job(job)


@app.get("/api/v1/jobs/{job_id}", response_model=JobResponse)
def get_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    """Get job status, progress and log."""
    return JobResponse.from_job(service.get_job(job_id))


@app.get("/api/v1/jobs", response_model=list[JobResponse])
def list_jobs(
    repository: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    service: JobService = Depends(get_job_service),
) -> list[JobResponse]:
    """List jobs, newest first."""
    return [JobResponse.from_job(job) for job in service.list_jobs(repository_id=repository, limit=limit)]


@app.post("/api/v1/jobs/{job_id}/retry", response_model=JobResponse)
def retry_job(job_id: str, service: JobService = Depends(get_job_service)) -> JobResponse:
    """Requeue a FAILED job."""
    return JobResponse.from_job(service.retry_job(job_id))


def _repository_path(owner: str, repo: str) -> str:
    if not owner.strip() or not repo.strip():
        raise HTTPException(status_code=400, detail="owner and repo are required")
    return f"{owner}/{repo}"


@app.get("/api/v1/repos/{owner}/{repo}/jobs", response_model=list[JobResponse])
def list_repository_jobs(
    owner: str,
    repo: str,
    limit: int = Query(default=50, ge=1, le=500),
    service: JobService = Depends(get_job_service),
) -> list[JobResponse]:
    """List the jobs of one repository, newest first."""
    repository_id = _repository_path(owner, repo)
    return [JobResponse.from_job(job) for job in service.list_jobs(repository_id=repository_id, limit=limit)]


@app.get("/api/v1/repos/{owner}/{repo}/coverage", response_model=CoverageListResponse)
def list_coverage(
    owner: str,
    repo: str,
    threshold: float | None = Query(default=None, ge=0, le=100),
    service: JobService = Depends(get_job_service),
) -> CoverageListResponse:
    """Coverage of each file from the latest scan; a threshold keeps only files below it."""
    repository_id = _repository_path(owner, repo)
    files = service.list_coverage_files(owner, repo, threshold=threshold)
    return CoverageListResponse(
        repository=repository_id,
        threshold=threshold,
        count=len(files),
        files=[FileCoverageResponse.from_row(row, threshold) for row in files],
    )


@app.post("/api/v1/repos/{owner}/{repo}/scan", response_model=ScanResponse)
async def scan_repository(owner: str, repo: str, service: JobService = Depends(get_job_service)) -> ScanResponse:
    """Clone the repository, run its suite with coverage and store per-file results."""
    _repository_path(owner, repo)
    return ScanResponse.from_result(await service.scan_repository(owner, repo))


@app.post("/api/v1/repos/{owner}/{repo}/improve", response_model=JobResponse, status_code=201)
async def improve_file(
    owner: str, repo: str, body: ImproveRequest, service: JobService = Depends(get_job_service)
) -> JobResponse:
    """Queue an improvement for a file of a scanned repository."""
    _repository_path(owner, repo)
    job = await service.request_improvement(owner, repo, body.file_path, body.requested_by)
    return JobResponse.from_job(job)
