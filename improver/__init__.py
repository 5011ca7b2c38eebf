"""Coverage Improver: queued, sandboxed test generation for hosted repositories."""

__version__ = "0.1.0"
