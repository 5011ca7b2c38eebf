"""Tests for ephemeral job workspaces."""

import asyncio
import os
import stat
import time
from datetime import timedelta
from pathlib import Path

import pytest

from improver.errors import WorkspaceError
from improver.workspace import WorkspaceManager


def test_create_is_private_and_tracked(workspaces) -> None:
    path = workspaces.create()

    assert path.is_dir()
    assert path.parent == workspaces.base_dir
    assert path.name.startswith("job-")
    assert stat.S_IMODE(path.stat().st_mode) == 0o700
    assert workspaces.tracked() == [path]


def test_names_are_unique(workspaces) -> None:
    assert len({workspaces.create() for _ in range(20)}) == 20


def test_create_failure_raises(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("")

    with pytest.raises(WorkspaceError):
        WorkspaceManager(blocker / "workspaces").create()


def test_cleanup_removes_and_untracks(workspaces) -> None:
    path = workspaces.create()
    (path / "repo").mkdir()
    (path / "repo" / "a.txt").write_text("x")

    workspaces.cleanup(path)

    assert not path.exists()
    assert workspaces.tracked() == []
    # Idempotent
    workspaces.cleanup(path)


def test_cleanup_refuses_outside_base(workspaces, tmp_path: Path) -> None:
    outside = tmp_path / "precious"
    outside.mkdir()

    workspaces.cleanup(outside)
    workspaces.cleanup(None)

    assert outside.exists()


def test_cleanup_refuses_base_dir(workspaces) -> None:
    workspaces.create()

    workspaces.cleanup(workspaces.base_dir)

    assert workspaces.base_dir.is_dir()


def test_cleanup_refuses_symlink_escape(workspaces, tmp_path: Path) -> None:
    outside = tmp_path / "precious"
    outside.mkdir()
    workspaces.base_dir.mkdir(parents=True)
    link = workspaces.base_dir / "job-link"
    link.symlink_to(outside)

    workspaces.cleanup(link)

    assert outside.exists()


def test_cleanup_older_than_removes_only_stale(workspaces) -> None:
    stale = workspaces.create()
    fresh = workspaces.create()
    now = time.time()
    os.utime(stale, (now - 25 * 3600, now - 25 * 3600))
    os.utime(fresh, (now - 3600, now - 3600))

    removed = workspaces.cleanup_older_than(timedelta(hours=24))

    assert removed == 1
    assert not stale.exists()
    assert fresh.exists()
    assert workspaces.tracked() == [fresh]


def test_cleanup_older_than_without_base(tmp_path: Path) -> None:
    assert WorkspaceManager(tmp_path / "never-created").cleanup_older_than(timedelta(hours=1)) == 0


def test_cleanup_all(workspaces) -> None:
    paths = [workspaces.create() for _ in range(3)]

    workspaces.cleanup_all()

    assert not any(path.exists() for path in paths)
    assert workspaces.tracked() == []


def test_stats(workspaces) -> None:
    path = workspaces.create()
    (path / "data.bin").write_bytes(b"\0" * 2048)
    (workspaces.base_dir / "orphan").mkdir()

    stats = workspaces.stats()

    assert stats.tracked_count == 1
    assert stats.total_count == 2
    assert stats.total_size_mb >= 0


@pytest.mark.asyncio
async def test_workspace_context_manager(workspaces) -> None:
    with pytest.raises(RuntimeError):
        async with workspaces.workspace() as path:
            assert path.is_dir()
            raise RuntimeError("boom")

    assert not path.exists()
    assert workspaces.tracked() == []


@pytest.mark.asyncio
async def test_sweep_disabled_returns_immediately(workspaces) -> None:
    await asyncio.wait_for(workspaces.sweep_forever(0.01, max_age=timedelta(0)), timeout=1)


@pytest.mark.asyncio
async def test_sweep_removes_stale_workspaces(workspaces) -> None:
    stale = workspaces.create()
    old = time.time() - 7200
    os.utime(stale, (old, old))

    sweeper = asyncio.create_task(workspaces.sweep_forever(0.01, max_age=timedelta(hours=1)))
    for _ in range(100):
        if not stale.exists():
            break
        await asyncio.sleep(0.01)
    sweeper.cancel()
    with pytest.raises(asyncio.CancelledError):
        await sweeper

    assert not stale.exists()
