"""Core job engine."""

from .job import ImprovementJob
from .pipeline import JobPipeline
from .scan import RepositoryScanner
from .service import JobService
from .state import JobStatus, Stage
from .worker import PollLoop

__all__ = ["ImprovementJob", "JobPipeline", "JobService", "JobStatus", "PollLoop", "RepositoryScanner", "Stage"]
