"""Repository lock value and branch naming.

The lock itself is not held in memory: a repository is locked exactly while
one of its jobs is RUNNING, and acquisition is a single conditional update
in the job store (see ``SqlJobStore.try_acquire_lock``).
"""

import re
from dataclasses import dataclass
from datetime import datetime

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")

BRANCH_PREFIX = "improve/"


@dataclass(frozen=True, slots=True)
class RepositoryLock:
    """The RUNNING job currently holding a repository."""

    repository_id: str
    job_id: str
    branch_name: str | None
    acquired_at: datetime | None

    def held_for(self, now: datetime) -> float | None:
        """Seconds the lock has been held, if the acquisition time is known."""
        if self.acquired_at is None:
            return None
        return (now - self.acquired_at).total_seconds()


def slugify_path(file_path: str) -> str:
    """``src/utils/String Utils.ts`` -> ``src-utils-string-utils-ts``."""
    return _NON_ALNUM.sub("-", file_path).strip("-").lower()


def make_branch_name(file_path: str, now: datetime) -> str:
    """Deterministic branch name for a file at a point in time."""
    millis = int(now.timestamp() * 1000)
    slug = slugify_path(file_path) or "file"
    return f"{BRANCH_PREFIX}{slug}-{millis}"
