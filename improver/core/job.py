"""Immutable improvement job record and its state machine.

Every transition validates the current status and returns a new revision;
the receiver is never modified, so a revision handed to a reader stays
consistent while the owning pipeline keeps producing newer ones.
"""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from improver.core.state import EXECUTABLE_STATUSES, TERMINAL_STATUSES, JobStatus
from improver.errors import InvalidTransition, JobValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_log_line(message: str, at: datetime) -> str:
    stamp = at.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"[{stamp}] {message}"


class ImprovementJob(BaseModel):
    """One attempt to raise test coverage for a file in a repository."""

    model_config = ConfigDict(frozen=True)

    id: str
    repository_id: str
    file_path: str
    requested_by: str
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    branch_name: str | None = None
    pr_url: str | None = None
    logs: str = ""
    last_log_at: datetime | None = None
    coverage_before: float | None = Field(default=None, ge=0, le=100)
    coverage_after: float | None = Field(default=None, ge=0, le=100)
    attempt_count: int = Field(default=0, ge=0)
    started_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise JobValidationError(str(exc)) from exc

    @field_validator("id", "repository_id", "file_path", "requested_by")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("must not be blank")
        return value

    @classmethod
    def create(cls, id: str, repository_id: str, file_path: str, requested_by: str) -> "ImprovementJob":
        """Create a new PENDING job."""
        now = utcnow()
        return cls(
            id=id,
            repository_id=repository_id,
            file_path=file_path,
            requested_by=requested_by,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------ helpers

    def _evolve(self, message: str | None = None, **changes: Any) -> "ImprovementJob":
        now = utcnow()
        if message:
            line = format_log_line(message, now)
            changes["logs"] = f"{self.logs}\n{line}" if self.logs else line
            changes["last_log_at"] = now
        changes["updated_at"] = now
        return type(self)(**{**self.model_dump(), **changes})

    def _require(self, allowed: tuple[JobStatus, ...], action: str) -> None:
        if self.status not in allowed:
            names = " or ".join(status.value for status in allowed)
            raise InvalidTransition(
                f"Only {names} jobs can {action} (job {self.id} is {self.status.value})"
            )

    # -------------------------------------------------------------- transitions

    def start(self, branch_name: str, started_at: datetime | None = None) -> "ImprovementJob":
        """PENDING/RETRY -> RUNNING with the branch chosen for this attempt."""
        self._require(EXECUTABLE_STATUSES, "be started")
        if not branch_name or not branch_name.strip():
            raise JobValidationError("branch_name must not be blank")
        return self._evolve(
            f"Job started (attempt {self.attempt_count + 1})",
            status=JobStatus.RUNNING,
            progress=5,
            branch_name=branch_name,
            started_at=started_at or utcnow(),
        )

    def update_progress(self, progress: int, message: str | None = None) -> "ImprovementJob":
        self._require((JobStatus.RUNNING,), "have progress updated")
        if progress < self.progress:
            raise InvalidTransition(
                f"Progress cannot decrease while running ({self.progress} -> {progress})"
            )
        return self._evolve(message, progress=progress)

    def append_log(self, message: str) -> "ImprovementJob":
        return self._evolve(message)

    def set_pr_url(self, pr_url: str, message: str | None = None) -> "ImprovementJob":
        """Record the pull request as soon as it exists, before completion."""
        self._require((JobStatus.RUNNING,), "have a PR URL set")
        if self.pr_url and self.pr_url != pr_url:
            raise InvalidTransition(f"PR URL already set for job {self.id}")
        return self._evolve(message, pr_url=pr_url)

    def set_coverage(
        self, coverage_before: float | None, coverage_after: float | None, message: str | None = None
    ) -> "ImprovementJob":
        self._require((JobStatus.RUNNING,), "have coverage set")
        return self._evolve(message, coverage_before=coverage_before, coverage_after=coverage_after)

    def succeed(self, pr_url: str, message: str | None = None) -> "ImprovementJob":
        self._require((JobStatus.RUNNING,), "be marked as succeeded")
        if self.pr_url and self.pr_url != pr_url:
            raise InvalidTransition(f"PR URL already set for job {self.id}")
        return self._evolve(message, status=JobStatus.SUCCEEDED, progress=100, pr_url=pr_url)

    def fail(self, error_message: str) -> "ImprovementJob":
        """Terminal failure that bypasses the retry budget."""
        self._require((JobStatus.RUNNING, JobStatus.PENDING), "be marked as failed")
        return self._evolve(f"ERROR: {error_message}", status=JobStatus.FAILED)

    def mark_for_retry(self, error_message: str, max_attempts: int) -> "ImprovementJob":
        """Count a failed attempt and decide between RETRY and FAILED."""
        self._require((JobStatus.RUNNING,), "be marked for retry")
        attempts = self.attempt_count + 1
        status = JobStatus.FAILED if attempts >= max_attempts else JobStatus.RETRY
        return self._evolve(
            f"ERROR (attempt {attempts}/{max_attempts}): {error_message}",
            status=status,
            attempt_count=attempts,
        )

    def retry(self) -> "ImprovementJob":
        """Manual retry of a FAILED job; clears branch, PR and coverage."""
        self._require((JobStatus.FAILED,), "be retried")
        return self._evolve(
            "Job retry requested",
            status=JobStatus.PENDING,
            progress=0,
            branch_name=None,
            pr_url=None,
            coverage_before=None,
            coverage_after=None,
            started_at=None,
        )

    # ------------------------------------------------------------------ queries

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status in (JobStatus.PENDING, JobStatus.RETRY, JobStatus.RUNNING)

    def can_retry(self, max_attempts: int) -> bool:
        return self.status == JobStatus.FAILED and self.attempt_count < max_attempts
