"""Tests for the repository lock and branch naming."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from threading import Barrier

import pytest
from sqlalchemy.exc import IntegrityError

from improver.core.lock import RepositoryLock, make_branch_name, slugify_path
from improver.core.state import JobStatus


def test_slugify_path() -> None:
    assert slugify_path("src/utils/String Utils.ts") == "src-utils-string-utils-ts"
    assert slugify_path("--a__b--") == "a-b"


def test_branch_name_is_deterministic() -> None:
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)
    expected = f"improve/src-file-ts-{int(now.timestamp() * 1000)}"

    assert make_branch_name("src/file.ts", now) == expected
    assert make_branch_name("src/file.ts", now) == expected


def test_lock_held_for() -> None:
    acquired = datetime(2026, 1, 1, tzinfo=timezone.utc)
    lock = RepositoryLock("octo/web", "j1", "improve/x-1", acquired)

    assert lock.held_for(acquired + timedelta(seconds=90)) == 90
    assert RepositoryLock("octo/web", "j1", None, None).held_for(acquired) is None


def test_acquire_moves_job_to_running(store, make_job) -> None:
    make_job("j1")

    running = store.try_acquire_lock("j1", "improve/src-file-ts-1")

    job = store.get("j1")
    assert running == job
    assert job.status == JobStatus.RUNNING
    assert job.branch_name == "improve/src-file-ts-1"
    assert job.progress == 5
    assert job.attempt_count == 0
    assert "Job started (attempt 1)" in job.logs


def test_second_job_for_busy_repository_is_refused(store, make_job) -> None:
    make_job("j1")
    make_job("j2")

    assert store.try_acquire_lock("j1", "improve/a-1") is not None
    assert store.try_acquire_lock("j2", "improve/a-2") is None

    j2 = store.get("j2")
    assert j2.status == JobStatus.PENDING
    assert j2.branch_name is None
    assert j2.logs == ""


def test_other_repositories_are_independent(store, make_job) -> None:
    make_job("j1", repository_id="octo/web")
    make_job("j2", repository_id="octo/api")

    assert store.try_acquire_lock("j1", "improve/a-1") is not None
    assert store.try_acquire_lock("j2", "improve/a-2") is not None


def test_lock_released_when_job_leaves_running(store, make_job) -> None:
    make_job("j1")
    make_job("j2")
    store.try_acquire_lock("j1", "improve/a-1")

    store.update(store.get("j1").mark_for_retry("boom", max_attempts=3))

    assert store.current_lock("octo/web") is None
    assert store.try_acquire_lock("j2", "improve/a-2") is not None


def test_terminal_and_unknown_jobs_cannot_be_locked(store, make_job) -> None:
    make_job("j1")
    store.try_acquire_lock("j1", "improve/a-1")
    store.update(store.get("j1").succeed("https://github.com/octo/web/pull/1"))

    assert store.try_acquire_lock("j1", "improve/a-2") is None
    assert store.try_acquire_lock("missing", "improve/a-3") is None


def test_current_lock(store, make_job) -> None:
    make_job("j1")
    assert store.current_lock("octo/web") is None

    store.try_acquire_lock("j1", "improve/a-1")
    lock = store.current_lock("octo/web")

    assert lock.job_id == "j1"
    assert lock.branch_name == "improve/a-1"
    assert lock.acquired_at.tzinfo is not None


@pytest.mark.parametrize("same_job", [False, True])
def test_concurrent_acquisition_yields_one_winner(store, make_job, same_job: bool) -> None:
    """Two threads racing for one repository: exactly one success."""
    make_job("j1")
    make_job("j2")
    job_ids = ["j1", "j1"] if same_job else ["j1", "j2"]
    barrier = Barrier(len(job_ids))

    def attempt(job_id: str):
        barrier.wait()
        return store.try_acquire_lock(job_id, f"improve/{job_id}")

    with ThreadPoolExecutor(max_workers=len(job_ids)) as pool:
        results = list(pool.map(attempt, job_ids))

    assert sorted(result is not None for result in results) == [False, True]
    running = [job for job in store.list_jobs() if job.status == JobStatus.RUNNING]
    assert len(running) == 1


def test_database_rejects_two_running_jobs_per_repository(store, make_job) -> None:
    make_job("j1")
    j2 = make_job("j2")
    store.try_acquire_lock("j1", "improve/a-1")

    with pytest.raises(IntegrityError):
        store.update(j2.start("improve/a-2"))
