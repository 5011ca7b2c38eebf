"""SQLAlchemy-backed job store and repository directory."""

from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import Engine, create_engine, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, sessionmaker
from sqlalchemy.pool import StaticPool

from improver.core.job import ImprovementJob, utcnow
from improver.core.lock import RepositoryLock
from improver.core.ports import FileCoverage, RepositoryInfo
from improver.core.state import EXECUTABLE_STATUSES, JobStatus
from improver.db.models import Base, FileCoverageRecord, ImprovementJobRecord, RepositoryRecord
from improver.errors import JobNotFound

logger = structlog.get_logger()


def make_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections are shared across worker threads."""
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)
    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def init_db(engine: Engine) -> None:
    """Create all tables and indexes that do not exist yet."""
    Base.metadata.create_all(bind=engine)


def _to_db(value: datetime | None) -> datetime | None:
    # Stored as naive UTC.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _job_values(job: ImprovementJob) -> dict[str, Any]:
    return {
        "repository_id": job.repository_id,
        "file_path": job.file_path,
        "requested_by": job.requested_by,
        "status": job.status.value,
        "progress": job.progress,
        "branch_name": job.branch_name,
        "pr_url": job.pr_url,
        "logs": job.logs,
        "last_log_at": _to_db(job.last_log_at),
        "coverage_before": job.coverage_before,
        "coverage_after": job.coverage_after,
        "attempt_count": job.attempt_count,
        "started_at": _to_db(job.started_at),
        "created_at": _to_db(job.created_at),
        "updated_at": _to_db(job.updated_at),
    }


def _to_domain(record: ImprovementJobRecord) -> ImprovementJob:
    return ImprovementJob(
        id=record.id,
        repository_id=record.repository_id,
        file_path=record.file_path,
        requested_by=record.requested_by,
        status=JobStatus(record.status),
        progress=record.progress,
        branch_name=record.branch_name,
        pr_url=record.pr_url,
        logs=record.logs or "",
        last_log_at=_from_db(record.last_log_at),
        coverage_before=record.coverage_before,
        coverage_after=record.coverage_after,
        attempt_count=record.attempt_count,
        started_at=_from_db(record.started_at),
        created_at=_from_db(record.created_at),
        updated_at=_from_db(record.updated_at),
    )


class SqlJobStore:
    """Job persistence with the per-repository lock as a conditional update."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def _session(self) -> Session:
        return self._sessions()

    def create(self, job: ImprovementJob) -> None:
        with self._sessions.begin() as session:
            session.add(ImprovementJobRecord(id=job.id, **_job_values(job)))
        logger.info("Job created", job_id=job.id, repository=job.repository_id, file=job.file_path)

    def update(self, job: ImprovementJob) -> None:
        stmt = (
            update(ImprovementJobRecord)
            .where(ImprovementJobRecord.id == job.id)
            .values(**_job_values(job))
            .execution_options(synchronize_session=False)
        )
        with self._sessions.begin() as session:
            result = session.execute(stmt)
        if result.rowcount != 1:
            raise JobNotFound(f"Job {job.id} not found")

    def get(self, job_id: str) -> ImprovementJob | None:
        with self._session() as session:
            record = session.get(ImprovementJobRecord, job_id)
            return _to_domain(record) if record else None

    def list_executable(self) -> list[ImprovementJob]:
        stmt = (
            select(ImprovementJobRecord)
            .where(ImprovementJobRecord.status.in_([s.value for s in EXECUTABLE_STATUSES]))
            .order_by(ImprovementJobRecord.created_at.asc(), ImprovementJobRecord.id.asc())
        )
        with self._session() as session:
            return [_to_domain(record) for record in session.scalars(stmt)]

    def list_jobs(self, repository_id: str | None = None, limit: int = 50) -> list[ImprovementJob]:
        stmt = (
            select(ImprovementJobRecord)
            .order_by(ImprovementJobRecord.created_at.desc(), ImprovementJobRecord.id.desc())
            .limit(limit)
        )
        if repository_id:
            stmt = stmt.where(ImprovementJobRecord.repository_id == repository_id)
        with self._session() as session:
            return [_to_domain(record) for record in session.scalars(stmt)]

    def try_acquire_lock(self, job_id: str, branch_name: str) -> ImprovementJob | None:
        """Move a PENDING/RETRY job to RUNNING if its repository has no RUNNING job.

        Returns the RUNNING revision that was written, or ``None`` when the
        job is not executable or its repository is busy.

        The status check, the busy-repository check and the write happen in a
        single UPDATE, guarded on the revision that was read, so concurrent
        callers for the same repository get exactly one success.
        """
        job = self.get(job_id)
        if job is None or job.status not in EXECUTABLE_STATUSES:
            return None

        started = job.start(branch_name, started_at=utcnow())
        running = aliased(ImprovementJobRecord)
        repository_busy = (
            select(running.id)
            .where(
                running.repository_id == job.repository_id,
                running.status == JobStatus.RUNNING.value,
            )
            .exists()
        )
        stmt = (
            update(ImprovementJobRecord)
            .where(
                ImprovementJobRecord.id == job_id,
                ImprovementJobRecord.status.in_([s.value for s in EXECUTABLE_STATUSES]),
                ImprovementJobRecord.updated_at == _to_db(job.updated_at),
                ~repository_busy,
            )
            .values(**_job_values(started))
            .execution_options(synchronize_session=False)
        )
        try:
            with self._sessions.begin() as session:
                acquired = session.execute(stmt).rowcount == 1
        except IntegrityError:
            # Another job of the repository became RUNNING concurrently.
            acquired = False

        if not acquired:
            return None
        logger.info("Repository lock acquired", job_id=job_id, repository=job.repository_id, branch=branch_name)
        return started

    def current_lock(self, repository_id: str) -> RepositoryLock | None:
        stmt = select(ImprovementJobRecord).where(
            ImprovementJobRecord.repository_id == repository_id,
            ImprovementJobRecord.status == JobStatus.RUNNING.value,
        )
        with self._session() as session:
            record = session.scalars(stmt).first()
            if record is None:
                return None
            return RepositoryLock(
                repository_id=repository_id,
                job_id=record.id,
                branch_name=record.branch_name,
                acquired_at=_from_db(record.started_at),
            )


class SqlRepositoryDirectory:
    """Repositories registered when jobs are requested."""

    def __init__(self, engine: Engine) -> None:
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def get(self, repository_id: str) -> RepositoryInfo | None:
        with self._sessions() as session:
            record = session.get(RepositoryRecord, repository_id)
            if record is None:
                return None
            return RepositoryInfo(
                owner=record.owner,
                name=record.name,
                clone_url=record.clone_url,
                default_branch=record.default_branch,
            )

    def save(self, info: RepositoryInfo) -> None:
        now = _to_db(utcnow())
        with self._sessions.begin() as session:
            record = session.get(RepositoryRecord, info.id)
            if record is None:
                record = RepositoryRecord(id=info.id, created_at=now)
                session.add(record)
            record.owner = info.owner
            record.name = info.name
            record.clone_url = info.clone_url
            record.default_branch = info.default_branch
            record.updated_at = now


def _to_file_coverage(record: FileCoverageRecord) -> FileCoverage:
    return FileCoverage(
        file_path=record.file_path,
        percent=record.coverage_percent,
        covered=record.lines_covered,
        total=record.lines_total,
    )


class SqlCoverageStore:
    """Per-file coverage from the latest scan of each repository."""

    def __init__(self, engine: Engine) -> None:
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def replace(self, repository_id: str, files: list[FileCoverage], measured_at: datetime | None = None) -> None:
        """Swap the repository's rows for ``files`` in one transaction."""
        measured_at = _to_db(measured_at or utcnow())
        with self._sessions.begin() as session:
            session.execute(delete(FileCoverageRecord).where(FileCoverageRecord.repository_id == repository_id))
            session.add_all(
                FileCoverageRecord(
                    repository_id=repository_id,
                    file_path=row.file_path,
                    coverage_percent=row.percent,
                    lines_covered=row.covered,
                    lines_total=row.total,
                    last_measured_at=measured_at,
                )
                for row in files
            )
        logger.info("Coverage data stored", repository=repository_id, files=len(files))

    def list_files(self, repository_id: str, below: float | None = None) -> list[FileCoverage]:
        """Files of the repository, lowest coverage first; ``below`` keeps only files under it."""
        stmt = (
            select(FileCoverageRecord)
            .where(FileCoverageRecord.repository_id == repository_id)
            .order_by(FileCoverageRecord.coverage_percent.asc(), FileCoverageRecord.file_path.asc())
        )
        if below is not None:
            stmt = stmt.where(FileCoverageRecord.coverage_percent < below)
        with self._sessions() as session:
            return [_to_file_coverage(record) for record in session.scalars(stmt)]

    def get_file(self, repository_id: str, file_path: str) -> FileCoverage | None:
        stmt = select(FileCoverageRecord).where(
            FileCoverageRecord.repository_id == repository_id,
            FileCoverageRecord.file_path == file_path,
        )
        with self._sessions() as session:
            record = session.scalars(stmt).first()
            return _to_file_coverage(record) if record else None

    def last_scanned_at(self, repository_id: str) -> datetime | None:
        stmt = select(func.max(FileCoverageRecord.last_measured_at)).where(
            FileCoverageRecord.repository_id == repository_id
        )
        with self._sessions() as session:
            return _from_db(session.scalar(stmt))
