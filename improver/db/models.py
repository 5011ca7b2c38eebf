"""SQLAlchemy database models."""

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class RepositoryRecord(Base):
    """Hosted repository known to the worker."""

    __tablename__ = "repository"

    id = Column(String(255), primary_key=True)  # owner/name
    owner = Column(String(100), nullable=False)
    name = Column(String(150), nullable=False)
    clone_url = Column(Text, nullable=False)
    default_branch = Column(String(255), nullable=False)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class ImprovementJobRecord(Base):
    """Improvement job row."""

    __tablename__ = "improvement_job"

    id = Column(String(36), primary_key=True)
    repository_id = Column(String(255), nullable=False, index=True)
    file_path = Column(Text, nullable=False)
    requested_by = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    progress = Column(Integer, nullable=False, default=0)
    branch_name = Column(String(255), nullable=True)
    pr_url = Column(Text, nullable=True)
    logs = Column(Text, nullable=False, default="")
    last_log_at = Column(DateTime, nullable=True)
    coverage_before = Column(Float, nullable=True)
    coverage_after = Column(Float, nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        # Backstop for the conditional update in try_acquire_lock: the
        # database itself rejects a second RUNNING job for a repository.
        Index(
            "uq_improvement_job_running_repository",
            "repository_id",
            unique=True,
            sqlite_where=text("status = 'RUNNING'"),
            postgresql_where=text("status = 'RUNNING'"),
        ),
    )


class FileCoverageRecord(Base):
    """Line coverage of one file, as of the repository's latest scan."""

    __tablename__ = "file_coverage"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repository_id = Column(String(255), nullable=False)
    file_path = Column(Text, nullable=False)
    coverage_percent = Column(Float, nullable=False)
    lines_covered = Column(Integer, nullable=False, default=0)
    lines_total = Column(Integer, nullable=False, default=0)
    last_measured_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_file_coverage_repository_percent", "repository_id", "coverage_percent"),
    )
