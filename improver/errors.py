"""Exception hierarchy shared across the worker."""


class ImproverError(Exception):
    """Base class for all errors raised by the improver package."""


# Job model


class JobError(ImproverError):
    """Problems with a job record."""


class JobValidationError(JobError, ValueError):
    """A job could not be constructed from the supplied values."""


class InvalidTransition(JobError):
    """A state transition was requested from a state that does not allow it."""


class JobNotFound(JobError, LookupError):
    """No job exists with the requested id."""


class FileNotEligible(JobValidationError):
    """The file is missing from the scan data or already meets the coverage threshold."""


# Collaborators


class RepositoryLookupError(ImproverError):
    """The hosting service could not resolve the target repository."""


class RepositoryNotScanned(ImproverError, LookupError):
    """No coverage data has been recorded for the repository."""


class GitError(ImproverError):
    """A git command failed or the repository cannot be used."""


class CoverageError(ImproverError):
    """Coverage could not be measured or the summary could not be read."""


# Pipeline


class PipelineError(ImproverError):
    """A hard pipeline failure; feeds the retry policy."""


class GenerationFailed(PipelineError):
    """The AI generator failed or produced no files."""


# Sandbox


class SandboxError(ImproverError):
    """Transport-level failures of the process supervisor."""


class SpawnError(SandboxError):
    """The external command could not be started."""


class SandboxUnavailable(SandboxError):
    """The container runtime is missing and unsandboxed execution is not allowed."""


class SandboxTimeout(PipelineError):
    """A sandboxed command exceeded its time budget and was terminated."""


# Workspaces


class WorkspaceError(ImproverError):
    """A job workspace could not be created."""
