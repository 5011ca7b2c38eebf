"""Timeout escalation for supervised processes.

The sequence only decides *what* to send and records where the process
ended up; timers live in the supervisor. That keeps it usable against any
object with ``terminate()`` and ``kill()``.
"""

from enum import Enum
from typing import Protocol


class Phase(str, Enum):
    RUNNING = "running"
    TERMINATING = "terminating"  # polite signal sent, grace window open
    TERMINATED = "terminated"  # exited inside the grace window
    KILLED = "killed"
    EXITED = "exited"  # finished on its own


class Terminable(Protocol):
    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class TerminationSequence:
    """RUNNING -> TERMINATING -> TERMINATED | KILLED, or RUNNING -> EXITED."""

    def __init__(self, target: Terminable) -> None:
        self.target = target
        self.phase = Phase.RUNNING

    def timeout_elapsed(self) -> None:
        if self.phase is Phase.RUNNING:
            self.target.terminate()
            self.phase = Phase.TERMINATING

    def grace_elapsed(self) -> None:
        if self.phase is Phase.TERMINATING:
            self.target.kill()
            self.phase = Phase.KILLED

    def exited(self) -> None:
        if self.phase is Phase.RUNNING:
            self.phase = Phase.EXITED
        elif self.phase is Phase.TERMINATING:
            self.phase = Phase.TERMINATED

    @property
    def timed_out(self) -> bool:
        return self.phase in (Phase.TERMINATING, Phase.TERMINATED, Phase.KILLED)
