"""Tests for job and repository persistence."""

import pytest

from improver.core.job import ImprovementJob
from improver.core.ports import FileCoverage
from improver.core.state import JobStatus
from improver.db import SqlCoverageStore
from improver.errors import JobNotFound
from tests.conftest import REPOSITORY


def test_round_trip_preserves_fields(store, make_job) -> None:
    job = make_job("j1")
    running = job.start("improve/a-1").set_coverage(40.5, None, "Baseline")
    store.update(running)

    loaded = store.get("j1")

    assert loaded == running
    assert loaded.created_at.tzinfo is not None
    assert loaded.coverage_before == 40.5


def test_get_unknown_job(store) -> None:
    assert store.get("nope") is None


def test_update_unknown_job_raises(store) -> None:
    job = ImprovementJob.create(id="ghost", repository_id="octo/web", file_path="a.ts", requested_by="me")
    with pytest.raises(JobNotFound):
        store.update(job)


def test_list_executable_is_oldest_first(store, make_job) -> None:
    make_job("j1")
    make_job("j2")
    make_job("j3")
    store.try_acquire_lock("j1", "improve/a-1")
    j1 = store.get("j1").mark_for_retry("boom", max_attempts=3)
    store.update(j1)
    store.try_acquire_lock("j2", "improve/a-2")

    executable = store.list_executable()

    assert [job.id for job in executable] == ["j1", "j3"]
    assert executable[0].status == JobStatus.RETRY


def test_list_jobs_filters_by_repository(store, make_job) -> None:
    make_job("j1", repository_id="octo/web")
    make_job("j2", repository_id="octo/api")
    make_job("j3", repository_id="octo/web")

    assert [job.id for job in store.list_jobs(repository_id="octo/web")] == ["j3", "j1"]
    assert len(store.list_jobs()) == 3
    assert len(store.list_jobs(limit=1)) == 1


def test_repository_directory_upsert(repositories) -> None:
    assert repositories.get(REPOSITORY.id) == REPOSITORY

    moved = type(REPOSITORY)(REPOSITORY.owner, REPOSITORY.name, REPOSITORY.clone_url, "develop")
    repositories.save(moved)

    assert repositories.get(REPOSITORY.id).default_branch == "develop"
    assert repositories.get("nobody/nothing") is None


def test_coverage_store_replaces_previous_scan(engine) -> None:
    files = SqlCoverageStore(engine)
    assert files.last_scanned_at("octo/web") is None

    files.replace("octo/web", [FileCoverage("a.ts", 50.0, 5, 10), FileCoverage("b.ts", 10.0, 1, 10)])
    files.replace("octo/api", [FileCoverage("a.ts", 70.0, 7, 10)])
    files.replace("octo/web", [FileCoverage("c.ts", 30.0, 3, 10), FileCoverage("b.ts", 90.0, 9, 10)])

    assert [row.file_path for row in files.list_files("octo/web")] == ["c.ts", "b.ts"]
    assert files.list_files("octo/web", below=50) == [FileCoverage("c.ts", 30.0, 3, 10)]
    assert files.get_file("octo/web", "a.ts") is None
    assert files.get_file("octo/api", "a.ts") == FileCoverage("a.ts", 70.0, 7, 10)
    assert files.last_scanned_at("octo/web").tzinfo is not None
