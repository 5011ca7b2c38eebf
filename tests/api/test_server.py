"""Tests for the REST API."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from improver.api.server import app, get_job_service
from improver.core.ports import FileCoverage
from improver.core.service import JobService
from improver.errors import CoverageError, RepositoryLookupError


@pytest.fixture
def scanner() -> MagicMock:
    scanner = MagicMock()
    scanner.scan = AsyncMock(return_value=[FileCoverage("src/a.ts", 25.0, 5, 20), FileCoverage("src/b.ts", 100.0, 8, 8)])
    return scanner


@pytest.fixture
def service(store, repositories, hosting, coverage_files, scanner) -> JobService:
    return JobService(store, repositories, hosting, coverage_files, scanner=scanner)


@pytest.fixture
def client(service):
    app.dependency_overrides[get_job_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_create_and_get_job(client) -> None:
    response = client.post("/api/v1/jobs", json={"repo": "octo/web", "file_path": "src/file.ts"})

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["repository_id"] == "octo/web"
    assert body["requested_by"] == "api"

    fetched = client.get(f"/api/v1/jobs/{body['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["file_path"] == "src/file.ts"


def test_create_rejects_malformed_repo(client) -> None:
    response = client.post("/api/v1/jobs", json={"repo": "just-a-name", "file_path": "src/file.ts"})
    assert response.status_code == 422


def test_repository_lookup_failure_is_bad_gateway(client, hosting) -> None:
    hosting.get_repository.side_effect = RepositoryLookupError("Failed to get repository octo/web: 404 Not Found")

    response = client.post("/api/v1/jobs", json={"repo": "octo/web", "file_path": "src/file.ts"})

    assert response.status_code == 502
    assert "404" in response.json()["detail"]


def test_unknown_job_is_not_found(client) -> None:
    assert client.get("/api/v1/jobs/missing").status_code == 404
    assert client.post("/api/v1/jobs/missing/retry").status_code == 404


def test_retry_conflicts_unless_failed(client, store, make_job) -> None:
    make_job("j1")
    assert client.post("/api/v1/jobs/j1/retry").status_code == 409

    store.try_acquire_lock("j1", "improve/a-1")
    store.update(store.get("j1").mark_for_retry("boom", max_attempts=1))

    response = client.post("/api/v1/jobs/j1/retry")
    assert response.status_code == 200
    assert response.json()["status"] == "PENDING"


def test_list_jobs(client, make_job) -> None:
    make_job("j1", repository_id="octo/web")
    make_job("j2", repository_id="octo/api")

    assert [job["id"] for job in client.get("/api/v1/jobs").json()] == ["j2", "j1"]
    assert [job["id"] for job in client.get("/api/v1/jobs", params={"repository": "octo/web"}).json()] == ["j1"]
    assert [job["id"] for job in client.get("/api/v1/repos/octo/api/jobs").json()] == ["j2"]


def test_create_refuses_file_above_threshold(client) -> None:
    response = client.post("/api/v1/jobs", json={"repo": "octo/web", "file_path": "src/done.ts"})

    assert response.status_code == 422
    assert "already above threshold" in response.json()["detail"]


def test_list_coverage(client) -> None:
    response = client.get("/api/v1/repos/octo/web/coverage")

    assert response.status_code == 200
    body = response.json()
    assert body["repository"] == "octo/web"
    assert body["threshold"] is None
    assert [row["file_path"] for row in body["files"]] == ["src/file.ts", "src/done.ts"]
    assert body["files"][0]["lines_needed"] is None


def test_list_coverage_below_threshold(client) -> None:
    body = client.get("/api/v1/repos/octo/web/coverage", params={"threshold": 80}).json()

    assert body["count"] == 1
    [row] = body["files"]
    assert row == {
        "file_path": "src/file.ts",
        "coverage_percent": 40.0,
        "lines_covered": 4,
        "lines_total": 10,
        "lines_needed": 4,
    }


def test_list_coverage_rejects_out_of_range_threshold(client) -> None:
    assert client.get("/api/v1/repos/octo/web/coverage", params={"threshold": 101}).status_code == 422


def test_coverage_of_unscanned_repository_is_not_found(client) -> None:
    response = client.get("/api/v1/repos/octo/api/coverage")

    assert response.status_code == 404
    assert "Please scan it first" in response.json()["detail"]


def test_scan_then_improve(client) -> None:
    response = client.post("/api/v1/repos/octo/web/scan")

    assert response.status_code == 200
    body = response.json()
    assert body["repository_id"] == "octo/web"
    assert (body["files_scanned"], body["files_below_threshold"]) == (2, 1)

    improve = client.post("/api/v1/repos/octo/web/improve", json={"file_path": "./src/a.ts", "requested_by": "jane"})
    assert improve.status_code == 201
    assert improve.json()["file_path"] == "src/a.ts"

    # The new scan replaced the old rows.
    stale = client.post("/api/v1/repos/octo/web/improve", json={"file_path": "src/file.ts"})
    assert stale.status_code == 422


def test_failed_scan_is_bad_gateway(client, scanner) -> None:
    scanner.scan.side_effect = CoverageError("Coverage summary not found at coverage/coverage-summary.json")

    response = client.post("/api/v1/repos/octo/web/scan")

    assert response.status_code == 502
    assert response.json()["detail"].startswith("Coverage scan failed")
