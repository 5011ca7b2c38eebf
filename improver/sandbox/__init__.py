"""Sandboxed process supervision."""

from .docker import DockerSandbox, NetworkMode, ResourceLimits
from .supervisor import OutputBuffer, ProcessResult, ProcessSupervisor
from .termination import Phase, TerminationSequence

__all__ = [
    "DockerSandbox",
    "NetworkMode",
    "OutputBuffer",
    "Phase",
    "ProcessResult",
    "ProcessSupervisor",
    "ResourceLimits",
    "TerminationSequence",
]
