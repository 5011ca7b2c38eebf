"""Job status and pipeline stage definitions."""

from enum import Enum


class JobStatus(str, Enum):
    """Status of an improvement job."""

    PENDING = "PENDING"
    RETRY = "RETRY"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


EXECUTABLE_STATUSES = (JobStatus.PENDING, JobStatus.RETRY)
TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED)


class Stage(str, Enum):
    """Fixed, ordered pipeline stages."""

    CLONE = "clone"
    BASELINE = "baseline"
    GENERATE = "generate"
    VERIFY = "verify"
    PUBLISH = "publish"
    PULL_REQUEST = "pull_request"


# Progress reported when a stage begins.
STAGE_PROGRESS: dict[Stage, int] = {
    Stage.CLONE: 5,
    Stage.BASELINE: 25,
    Stage.GENERATE: 50,
    Stage.VERIFY: 75,
    Stage.PUBLISH: 90,
    Stage.PULL_REQUEST: 90,
}
