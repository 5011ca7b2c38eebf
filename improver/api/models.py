"""Pydantic models for API requests and responses."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from improver.core.job import ImprovementJob
from improver.core.ports import FileCoverage
from improver.core.scan import ScanResult, lines_needed
from improver.core.state import JobStatus


class JobCreate(BaseModel):
    """Request model for queuing a coverage improvement."""

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "repo": "octo-org/web-app",
                "file_path": "src/utils/format.ts",
                "requested_by": "jane",
            }
        }
    )

    repo: str = Field(..., description="Repository in format owner/name")
    file_path: str = Field(..., min_length=1, description="File to cover, relative to the repository root")
    requested_by: str = Field(default="api", min_length=1)

    @field_validator("repo")
    @classmethod
    def _owner_and_name(cls, value: str) -> str:
        owner, _, name = value.strip().partition("/")
        if not owner or not name or "/" in name:
            raise ValueError("repo must be in format owner/name")
        return f"{owner}/{name}"

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repo.split("/", 1)[1]


class JobResponse(BaseModel):
    """Response model for job status."""

    id: str
    status: JobStatus
    repository_id: str
    file_path: str
    requested_by: str
    progress: int
    branch_name: str | None = None
    pr_url: str | None = None
    coverage_before: float | None = None
    coverage_after: float | None = None
    attempt_count: int
    logs: str = ""
    last_log_at: datetime | None = None
    started_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: ImprovementJob) -> "JobResponse":
        return cls(**job.model_dump())


class ImproveRequest(BaseModel):
    """Request model for improving a file of the repository in the path."""

    file_path: str = Field(..., min_length=1)
    requested_by: str = Field(default="api", min_length=1)


class FileCoverageResponse(BaseModel):
    file_path: str
    coverage_percent: float
    lines_covered: int
    lines_total: int
    lines_needed: int | None = Field(default=None, description="Lines to cover to reach the threshold")

    @classmethod
    def from_row(cls, row: FileCoverage, threshold: float | None = None) -> "FileCoverageResponse":
        return cls(
            file_path=row.file_path,
            coverage_percent=row.percent,
            lines_covered=row.covered,
            lines_total=row.total,
            lines_needed=lines_needed(row, threshold) if threshold is not None else None,
        )


class CoverageListResponse(BaseModel):
    repository: str
    threshold: float | None = None
    count: int
    files: list[FileCoverageResponse]


class ScanResponse(BaseModel):
    repository_id: str
    owner: str
    name: str
    files_scanned: int
    files_below_threshold: int
    threshold: float
    scanned_at: datetime

    @classmethod
    def from_result(cls, result: ScanResult) -> "ScanResponse":
        return cls(
            repository_id=result.repository.id,
            owner=result.repository.owner,
            name=result.repository.name,
            files_scanned=result.files_scanned,
            files_below_threshold=result.files_below_threshold,
            threshold=result.threshold,
            scanned_at=result.scanned_at,
        )
