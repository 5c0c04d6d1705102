"""
Export Endpoint Tests
=====================

HTTP-level tests for the export job API: status codes, camelCase bodies,
the error envelope and download headers.
"""

import hashlib
import io
import os
import tarfile
import time
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from conftest import auth_headers, wait_for_status
from toolexport.core.config import settings
from toolexport.middleware.rate_limiter import rate_limiter
from toolexport.models.base import utc_now


API = settings.API_PREFIX


def _assert_error(response, status_code: int, code: str) -> dict:
    assert response.status_code == status_code, response.text
    body = response.json()
    assert body["code"] == code
    assert body["message"]
    assert body["timestamp"]
    assert body["requestId"] == response.headers["X-Request-ID"]
    assert "Traceback" not in response.text
    return body


@pytest.fixture
def package_job(tmp_path, seed_job):
    async def _make(**fields):
        path = tmp_path / "package.tar.gz"
        data = os.urandom(1000)
        path.write_bytes(data)
        values = dict(
            status="completed",
            package_path=str(path),
            package_size_bytes=len(data),
            package_checksum=hashlib.sha256(data).hexdigest(),
            package_algorithm="sha256",
            package_expires_at=utc_now() + timedelta(days=30),
            completed_at=datetime(2026, 5, 2, 12, 0, tzinfo=timezone.utc),
        )
        values.update(fields)
        job = await seed_job(**values)
        return job, data

    return _make


# ---------------------------------------------------------------------------
# Health / metrics / auth envelope
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["runningExports"] == 0
    assert "version" in data
    assert "timestamp" in data


@pytest.mark.asyncio
async def test_metrics_endpoint(client: AsyncClient):
    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "export_jobs_running" in response.text


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client: AsyncClient):
    response = await client.get(f"{API}/export-jobs")
    body = _assert_error(response, 401, "UNAUTHORIZED")
    assert body["message"] == "Authentication required"

    response = await client.get(f"{API}/export-jobs", headers={"Authorization": "Bearer not-a-jwt"})
    body = _assert_error(response, 401, "UNAUTHORIZED")
    assert body["message"] == "Invalid or expired token"


@pytest.mark.asyncio
async def test_request_id_is_propagated(client: AsyncClient):
    response = await client.get(
        f"{API}/export-jobs/missing",
        headers={**auth_headers(), "X-Request-ID": "req-123"},
    )
    body = _assert_error(response, 404, "JOB_NOT_FOUND")
    assert body["requestId"] == "req-123"

    response = await client.get(f"{API}/export-jobs/missing", headers={**auth_headers(), "X-Request-ID": "bad id!"})
    assert response.headers["X-Request-ID"] != "bad id!"


@pytest.mark.asyncio
async def test_request_validation_errors(client: AsyncClient):
    response = await client.get(f"{API}/export-jobs?start_date=yesterday", headers=auth_headers())

    body = _assert_error(response, 422, "VALIDATION_ERROR")
    assert body["details"]["errors"][0]["field"] == "query.start_date"


# ---------------------------------------------------------------------------
# Validate / start
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_validate_export(client: AsyncClient, seed_form_tool):
    await seed_form_tool()

    response = await client.post(f"{API}/tools/contact-form/export/validate", headers=auth_headers())

    assert response.status_code == 200
    data = response.json()
    assert data["toolId"] == "contact-form"
    assert data["success"] is True
    assert data["errors"] == []
    assert data["estimatedDurationMs"] == 30000


@pytest.mark.asyncio
async def test_validate_export_failure_returns_report(client: AsyncClient):
    response = await client.post(f"{API}/tools/ghost/export/validate", headers=auth_headers())

    assert response.status_code == 422
    data = response.json()
    assert data["success"] is False
    assert data["errors"][0]["field"] == "toolId"


@pytest.mark.asyncio
async def test_export_end_to_end(client: AsyncClient, services, seed_form_tool):
    await seed_form_tool(submissions=2)
    headers = auth_headers("user-1")

    response = await client.post(f"{API}/tools/contact-form/export", headers=headers)
    assert response.status_code == 201
    created = response.json()
    assert created["status"] == "pending"
    assert created["stepsCompleted"] == 0
    assert created["progressPercentage"] == 0
    job_id = created["jobId"]

    await wait_for_status(services, job_id, {"completed", "failed"})

    response = await client.get(f"{API}/export-jobs/{job_id}", headers=headers)
    assert response.status_code == 200
    assert "no-store" in response.headers["Cache-Control"]
    status = response.json()
    assert status["status"] == "completed"
    assert status["progressPercentage"] == 100
    assert len(status["packageChecksum"]) == 64
    assert status["packageSizeBytes"] > 0
    assert "packagePath" not in status

    response = await client.get(f"{API}/export-jobs/{job_id}/download", headers=headers)
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/gzip"
    assert response.headers["X-Package-Checksum"] == status["packageChecksum"]
    assert hashlib.sha256(response.content).hexdigest() == status["packageChecksum"]
    with tarfile.open(fileobj=io.BytesIO(response.content), mode="r:gz") as tar:
        assert "export-contact-form/manifest.json" in tar.getnames()

    response = await client.get(f"{API}/export-jobs/{job_id}", headers=headers)
    assert response.json()["downloadCount"] == 1


@pytest.mark.asyncio
async def test_start_export_errors(client: AsyncClient, seed_form_tool, seed_job):
    response = await client.post(f"{API}/tools/ghost/export", headers=auth_headers())
    _assert_error(response, 404, "TOOL_NOT_FOUND")

    await seed_form_tool("empty-form", fields=[])
    response = await client.post(f"{API}/tools/empty-form/export", headers=auth_headers())
    body = _assert_error(response, 422, "EXPORT_VALIDATION_FAILED")
    assert body["details"]["errors"]

    await seed_form_tool("owned-form", owner_id="owner")
    response = await client.post(f"{API}/tools/owned-form/export", headers=auth_headers("intruder"))
    _assert_error(response, 403, "EXPORT_FORBIDDEN")

    await seed_form_tool("busy-form")
    await seed_job(tool_id="busy-form", status="in_progress")
    response = await client.post(f"{API}/tools/busy-form/export", headers=auth_headers())
    _assert_error(response, 409, "EXPORT_IN_PROGRESS")


# ---------------------------------------------------------------------------
# List / status / cancel / checksum
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_list_export_jobs(client: AsyncClient, seed_job):
    for i in range(3):
        await seed_job(tool_id=f"form-{i}", user_id="user-1", status="completed")
    for i in range(2):
        await seed_job(tool_id=f"theme-{i}", user_id="user-2", status="failed", tool_type="themes")

    response = await client.get(f"{API}/export-jobs?limit=2&offset=0", headers=auth_headers("user-1"))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert len(data["jobs"]) == 2
    assert {j["userId"] for j in data["jobs"]} == {"user-1"}
    assert (data["limit"], data["offset"], data["page"], data["totalPages"]) == (2, 0, 1, 2)

    response = await client.get(f"{API}/export-jobs", headers=auth_headers("admin-1", role="admin"))
    assert response.json()["total"] == 5

    response = await client.get(
        f"{API}/export-jobs?status_filter=failed&tool_type_filter=themes",
        headers=auth_headers("admin-1", role="admin"),
    )
    assert response.json()["total"] == 2


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "query,code",
    [
        ("limit=200", "INVALID_LIMIT"),
        ("limit=0", "INVALID_LIMIT"),
        ("limit=abc", "INVALID_LIMIT"),
        ("offset=-1", "INVALID_OFFSET"),
        ("offset=x", "INVALID_OFFSET"),
        ("sort_by=password", "INVALID_PARAMETERS"),
        ("status_filter=exploded", "INVALID_PARAMETERS"),
    ],
)
async def test_list_export_jobs_bad_parameters(client: AsyncClient, query, code):
    response = await client.get(f"{API}/export-jobs?{query}", headers=auth_headers())
    _assert_error(response, 400, code)


@pytest.mark.asyncio
async def test_status_is_rate_limited_per_user(client: AsyncClient, seed_job):
    job = await seed_job(status="in_progress")
    rate_limiter._memory["ratelimit:export_status:user-1"] = (
        settings.EXPORT_STATUS_RATE_LIMIT,
        time.monotonic() + 30,
    )

    response = await client.get(f"{API}/export-jobs/{job.job_id}", headers=auth_headers("user-1"))
    _assert_error(response, 429, "RATE_LIMITED")
    assert int(response.headers["Retry-After"]) >= 1

    response = await client.get(f"{API}/export-jobs/{job.job_id}", headers=auth_headers("user-2"))
    assert response.status_code == 200
    assert response.json()["status"] == "in_progress"


@pytest.mark.asyncio
async def test_cancel_export(client: AsyncClient, seed_job):
    job = await seed_job(status="in_progress", user_id="user-1")

    response = await client.post(f"{API}/export-jobs/{job.job_id}/cancel", headers=auth_headers("user-2"))
    _assert_error(response, 403, "UNAUTHORIZED_CANCELLATION")

    response = await client.post(f"{API}/export-jobs/{job.job_id}/cancel", headers=auth_headers("user-1"))
    assert response.status_code == 200
    data = response.json()
    assert data["jobId"] == job.job_id
    assert data["status"] == "cancelling"
    assert data["message"]

    response = await client.post(f"{API}/export-jobs/{job.job_id}/cancel", headers=auth_headers("user-1"))
    _assert_error(response, 409, "INVALID_JOB_STATUS")

    response = await client.post(f"{API}/export-jobs/missing/cancel", headers=auth_headers("user-1"))
    _assert_error(response, 404, "JOB_NOT_FOUND")


@pytest.mark.asyncio
async def test_checksum_endpoint(client: AsyncClient, seed_job):
    checksum = "0f" * 32
    done = await seed_job(
        tool_id="a",
        status="completed",
        package_checksum=checksum,
        package_algorithm="sha256",
        package_size_bytes=3 * 1024 * 1024 + 1,
        completed_at=utc_now(),
    )
    running = await seed_job(tool_id="b", status="in_progress")
    legacy = await seed_job(tool_id="c", status="completed", package_checksum=None)
    unsized = await seed_job(tool_id="d", status="completed", package_checksum=checksum, package_size_bytes=None)

    response = await client.get(f"{API}/export-jobs/{done.job_id}/checksum", headers=auth_headers())
    assert response.status_code == 200
    assert "immutable" in response.headers["Cache-Control"]
    data = response.json()
    assert data["jobId"] == done.job_id
    assert data["packageChecksum"] == checksum
    assert data["algorithm"] == "sha256"
    assert data["packageSizeMB"] == "3.0 MB"
    assert data["verifiedAt"] is None

    response = await client.get(f"{API}/export-jobs/{unsized.job_id}/checksum", headers=auth_headers())
    assert response.status_code == 200
    assert response.json()["packageSizeMB"] == "Unknown"
    assert response.json()["packageSizeBytes"] is None

    response = await client.get(f"{API}/export-jobs/{running.job_id}/checksum", headers=auth_headers())
    _assert_error(response, 400, "JOB_NOT_COMPLETED")

    response = await client.get(f"{API}/export-jobs/{legacy.job_id}/checksum", headers=auth_headers())
    _assert_error(response, 400, "CHECKSUM_NOT_AVAILABLE")


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_download_headers_and_body(client: AsyncClient, package_job):
    job, data = await package_job(user_id="user-1")

    response = await client.get(f"{API}/export-jobs/{job.job_id}/download", headers=auth_headers("user-1"))

    assert response.status_code == 200
    assert response.content == data
    assert response.headers["Content-Disposition"] == 'attachment; filename="export-contact-form-2026-05-02.tar.gz"'
    assert response.headers["Accept-Ranges"] == "bytes"
    assert response.headers["X-Package-Size"] == "1000"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


@pytest.mark.asyncio
async def test_download_range(client: AsyncClient, package_job):
    job, data = await package_job(user_id="user-1")
    headers = auth_headers("user-1")

    response = await client.get(f"{API}/export-jobs/{job.job_id}/download", headers={**headers, "Range": "bytes=0-99"})
    assert response.status_code == 206
    assert response.headers["Content-Range"] == "bytes 0-99/1000"
    assert response.content == data[:100]

    response = await client.get(
        f"{API}/export-jobs/{job.job_id}/download",
        headers={**headers, "Range": "bytes=2000-3000"},
    )
    _assert_error(response, 400, "INVALID_RANGE")


@pytest.mark.asyncio
async def test_download_tampered_package(client: AsyncClient, package_job):
    job, data = await package_job(user_id="user-1")
    with open(job.package_path, "r+b") as fh:
        fh.write(bytes([data[0] ^ 0xFF]))

    response = await client.get(f"{API}/export-jobs/{job.job_id}/download", headers=auth_headers("user-1"))

    _assert_error(response, 403, "PACKAGE_TAMPERED")


@pytest.mark.asyncio
async def test_download_errors(client: AsyncClient, package_job, seed_job, tmp_path):
    job, _ = await package_job(user_id="owner")
    response = await client.get(f"{API}/export-jobs/{job.job_id}/download", headers=auth_headers("intruder"))
    _assert_error(response, 403, "DOWNLOAD_UNAUTHORIZED")

    response = await client.get(
        f"{API}/export-jobs/{job.job_id}/download",
        headers=auth_headers("admin-1", role="admin"),
    )
    assert response.status_code == 200

    pending = await seed_job(tool_id="pending-form", status="pending")
    response = await client.get(f"{API}/export-jobs/{pending.job_id}/download", headers=auth_headers())
    _assert_error(response, 404, "PACKAGE_NOT_READY")

    expired = await seed_job(
        tool_id="old-form",
        status="completed",
        package_path=str(tmp_path / "old.tar.gz"),
        package_expires_at=utc_now() - timedelta(days=1),
    )
    response = await client.get(f"{API}/export-jobs/{expired.job_id}/download", headers=auth_headers())
    _assert_error(response, 410, "PACKAGE_EXPIRED")

    missing_path = tmp_path / "vanished.tar.gz"
    missing = await seed_job(
        tool_id="gone-form",
        status="completed",
        package_path=str(missing_path),
        package_expires_at=utc_now() + timedelta(days=1),
    )
    response = await client.get(f"{API}/export-jobs/{missing.job_id}/download", headers=auth_headers())
    _assert_error(response, 404, "FILE_NOT_FOUND")
    assert str(tmp_path) not in response.text
