"""Ephemeral per-job workspaces.

Each pipeline execution clones into its own directory under a single base
directory. Directories are registered in a process-wide set as soon as they
exist so that they can be removed on shutdown, and a periodic sweep removes
anything older than a maximum age to cover crashes that skipped cleanup.
"""

import asyncio
import atexit
import secrets
import shutil
import threading
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

import structlog

from improver.errors import WorkspaceError

logger = structlog.get_logger()

# Process-wide registry of live workspaces.
_tracked: set[Path] = set()
_tracked_lock = threading.Lock()
_atexit_registered = False


def _cleanup_tracked_at_exit() -> None:
    with _tracked_lock:
        paths = list(_tracked)
        _tracked.clear()
    for path in paths:
        shutil.rmtree(path, ignore_errors=True)


@dataclass(frozen=True, slots=True)
class WorkspaceStats:
    tracked_count: int
    total_count: int
    total_size_mb: float


class WorkspaceManager:
    """Create, track and destroy job scratch directories under ``base_dir``."""

    def __init__(self, base_dir: str | Path, max_age: timedelta | None = None) -> None:
        global _atexit_registered
        self.base_dir = Path(base_dir).resolve()
        self.max_age = max_age
        with _tracked_lock:
            if not _atexit_registered:
                atexit.register(_cleanup_tracked_at_exit)
                _atexit_registered = True
        logger.info("Workspace manager initialized", base_dir=str(self.base_dir))

    # ------------------------------------------------------------------ create

    def create(self, prefix: str = "job") -> Path:
        """Create a new private directory and register it before returning it."""
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
            name = f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
            path = self.base_dir / name
            path.mkdir(mode=0o700)
        except OSError as e:
            logger.error("Failed to create workspace", prefix=prefix, error=str(e))
            raise WorkspaceError(f"Failed to create workspace: {e}") from e

        with _tracked_lock:
            _tracked.add(path)
        logger.info("Workspace created", workspace=path.name)
        return path

    @asynccontextmanager
    async def workspace(self, prefix: str = "job") -> AsyncIterator[Path]:
        """Async context manager yielding a workspace that is always cleaned up."""
        path = self.create(prefix)
        try:
            yield path
        finally:
            self.cleanup(path)

    # ----------------------------------------------------------------- cleanup

    def contains(self, path: Path) -> bool:
        """True if ``path`` lies strictly inside the base directory."""
        return path != self.base_dir and self.base_dir in path.parents

    def cleanup(self, path: str | Path | None) -> None:
        """Remove a workspace. Idempotent; never raises."""
        if not path:
            logger.warning("Refusing to clean up empty workspace path")
            return
        try:
            target = Path(path).resolve()
        except (OSError, RuntimeError) as e:
            logger.warning("Refusing to clean up unresolvable path", path=str(path), error=str(e))
            return

        if not self.contains(target):
            logger.warning("Refusing to clean up directory outside base", path=str(target))
            return

        try:
            shutil.rmtree(target)
            logger.info("Workspace cleaned up", workspace=target.name)
        except FileNotFoundError:
            logger.debug("Workspace already removed", workspace=target.name)
        except OSError as e:
            logger.error("Failed to clean up workspace", workspace=str(target), error=str(e))
        finally:
            with _tracked_lock:
                _tracked.discard(target)

    def tracked(self) -> list[Path]:
        """Tracked workspaces that belong to this manager's base directory."""
        with _tracked_lock:
            return sorted(path for path in _tracked if self.contains(path))

    def cleanup_all(self) -> None:
        """Remove every tracked workspace under the base directory."""
        paths = self.tracked()
        logger.info("Cleaning up tracked workspaces", count=len(paths))
        for path in paths:
            self.cleanup(path)

    def cleanup_older_than(self, max_age: timedelta) -> int:
        """Remove directories under the base whose mtime is older than ``max_age``.

        Tracked and untracked directories are treated alike.

        Returns:
            Number of directories removed
        """
        if not self.base_dir.is_dir():
            return 0

        cutoff = time.time() - max_age.total_seconds()
        removed = 0
        try:
            entries = list(self.base_dir.iterdir())
        except OSError as e:
            logger.error("Failed to list workspace base directory", error=str(e))
            return 0

        for entry in entries:
            try:
                if entry.is_symlink() or not entry.is_dir():
                    continue
                if entry.stat().st_mtime >= cutoff:
                    continue
            except OSError:
                logger.debug("Failed to check workspace age", workspace=entry.name)
                continue
            self.cleanup(entry)
            removed += 1

        if removed:
            logger.info("Removed stale workspaces", count=removed, max_age_hours=max_age.total_seconds() / 3600)
        return removed

    async def sweep_forever(self, interval: float, max_age: timedelta | None = None) -> None:
        """Periodically remove stale workspaces until cancelled."""
        age = max_age or self.max_age
        if age is None or age.total_seconds() <= 0:
            logger.info("Automatic workspace cleanup disabled")
            return
        logger.info("Automatic workspace cleanup enabled", interval=interval, max_age_hours=age.total_seconds() / 3600)
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.cleanup_older_than, age)
            except Exception as e:
                logger.error("Automatic workspace cleanup failed", error=str(e))

    # ------------------------------------------------------------------- stats

    def stats(self) -> WorkspaceStats:
        if not self.base_dir.is_dir():
            return WorkspaceStats(tracked_count=len(self.tracked()), total_count=0, total_size_mb=0.0)
        directories = [entry for entry in self.base_dir.iterdir() if entry.is_dir() and not entry.is_symlink()]
        total_size = 0
        for directory in directories:
            for item in directory.rglob("*"):
                try:
                    if item.is_file() and not item.is_symlink():
                        total_size += item.stat().st_size
                except OSError:
                    continue
        return WorkspaceStats(
            tracked_count=len(self.tracked()),
            total_count=len(directories),
            total_size_mb=round(total_size / (1024 * 1024), 2),
        )
