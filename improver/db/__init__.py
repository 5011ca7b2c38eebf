"""Persistence."""

from .store import SqlCoverageStore, SqlJobStore, SqlRepositoryDirectory, init_db, make_engine

__all__ = ["SqlCoverageStore", "SqlJobStore", "SqlRepositoryDirectory", "init_db", "make_engine"]
