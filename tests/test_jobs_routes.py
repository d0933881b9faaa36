"""
API tests for the /api/jobs routes.

Run with: python -m pytest tests/test_jobs_routes.py -v
"""

import asyncio
import zipfile
from io import BytesIO
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.jobs.job_types import PDF_MIME, Principal, StoredOutput
from app.jobs.operations import JobOperations
from app.jobs_routes import get_current_principal, get_operations
from app.main import app
from app.storage_service import LocalObjectStore, StorageError, job_object_name


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def client(operations):
    app.dependency_overrides[get_operations] = lambda: operations
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login():
    """Authenticate requests as the given principal."""
    def _login(principal: Principal):
        app.dependency_overrides[get_current_principal] = lambda: principal
    return _login


@pytest.fixture
def auth_headers():
    return {"Authorization": "Bearer test-token"}


def done_job(manager, store, owner_id="U1", name="report.pdf", data=b"%PDF-data"):
    job = manager.create_job(owner_id, "report.pdf", {})
    key = job_object_name(owner_id, job.id, name)
    store.put_bytes(key, data, content_type=PDF_MIME)
    manager.mark_done(job.id, StoredOutput(key, name, PDF_MIME))
    return job.id


# =============================================================================
# AUTH
# =============================================================================

class TestAuth:
    def test_missing_authorization_header(self, client):
        response = client.get("/api/jobs")
        assert response.status_code == 401

    def test_malformed_authorization_header(self, client):
        response = client.get("/api/jobs", headers={"Authorization": "Token abc"})
        assert response.status_code == 401

    def test_invalid_token(self, client, auth_headers):
        with patch("app.jobs_routes.verify_supabase_token", return_value=None):
            response = client.get("/api/jobs", headers=auth_headers)
        assert response.status_code == 401

    def test_token_resolves_principal(self, client, auth_headers, manager):
        manager.create_job("U1", "report.pdf", {})
        with patch("app.jobs_routes.verify_supabase_token", return_value={"id": "U1", "email": "u1@example.com"}), \
                patch("app.jobs_routes.get_user_profile", return_value={"role": "user"}):
            response = client.get("/api/jobs", headers=auth_headers)
        assert response.status_code == 200
        assert len(response.json()) == 1

    def test_admin_routes_need_admin_role(self, client, auth_headers):
        with patch("app.jobs_routes.verify_supabase_token", return_value={"id": "U1"}), \
                patch("app.jobs_routes.get_user_profile", return_value={"role": "user"}):
            response = client.get("/api/jobs/admin/all", headers=auth_headers)
        assert response.status_code == 403

    def test_admin_role_from_profile(self, client, auth_headers):
        with patch("app.jobs_routes.verify_supabase_token", return_value={"id": "ADMIN"}), \
                patch("app.jobs_routes.get_user_profile", return_value={"role": "admin"}):
            response = client.get("/api/jobs/admin/all", headers=auth_headers)
        assert response.status_code == 200


# =============================================================================
# JOBS
# =============================================================================

class TestEnqueueAndRead:
    def test_enqueue(self, client, login, alice, queue):
        login(alice)

        response = client.post("/api/jobs", json={"type": "report.pdf", "payload": {"range": "2024-01"}})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "queued"
        assert data["job_id"]
        assert queue.pending_count() == 1

    def test_enqueue_requires_type(self, client, login, alice):
        login(alice)
        response = client.post("/api/jobs", json={"type": "", "payload": {}})
        assert response.status_code == 422

    def test_get_job(self, client, login, alice, manager):
        login(alice)
        job = manager.create_job("U1", "report.pdf", {"range": "2024-01"})

        response = client.get(f"/api/jobs/{job.id}")

        assert response.status_code == 200
        assert response.json()["type"] == "report.pdf"
        assert response.json()["payload"] == {"range": "2024-01"}

    def test_get_job_of_other_user(self, client, login, bob, manager):
        login(bob)
        job = manager.create_job("U1", "report.pdf", {})
        assert client.get(f"/api/jobs/{job.id}").status_code == 403

    def test_get_unknown_job(self, client, login, alice):
        login(alice)
        assert client.get("/api/jobs/missing").status_code == 404

    def test_list_with_invalid_status(self, client, login, alice):
        login(alice)
        assert client.get("/api/jobs?status=bogus").status_code == 400

    def test_list_with_status(self, client, login, alice, manager, store):
        login(alice)
        done_job(manager, store)
        manager.create_job("U1", "report.pdf", {})

        response = client.get("/api/jobs?status=done")

        assert [j["status"] for j in response.json()] == ["done"]


class TestDownloadAndDelete:
    def test_download(self, client, login, alice, manager, store):
        login(alice)
        job_id = done_job(manager, store)

        response = client.get(f"/api/jobs/{job_id}/download")

        assert response.status_code == 200
        assert response.content == b"%PDF-data"
        assert response.headers["content-type"] == PDF_MIME
        assert response.headers["content-disposition"] == 'attachment; filename="report.pdf"'

    def test_download_not_ready(self, client, login, alice, manager):
        login(alice)
        job = manager.create_job("U1", "report.pdf", {})
        assert client.get(f"/api/jobs/{job.id}/download").status_code == 400

    def test_download_artifact_gone(self, client, login, alice, manager, store):
        login(alice)
        job_id = done_job(manager, store)
        store.delete(job_object_name("U1", job_id, "report.pdf"))

        response = client.get(f"/api/jobs/{job_id}/download")

        assert response.status_code == 410
        assert response.json()["detail"] == "File no longer available"

    def test_download_when_storage_is_down(self, client, login, alice, manager, queue, tmp_path):
        class UnreachableStore(LocalObjectStore):
            def get_stream(self, key, chunk_size=64 * 1024):
                raise StorageError("backend unreachable")

        broken = UnreachableStore(str(tmp_path / "broken"))
        app.dependency_overrides[get_operations] = lambda: JobOperations(manager, queue, broken, max_attempts=2)
        login(alice)
        job_id = done_job(manager, broken)

        response = client.get(f"/api/jobs/{job_id}/download")

        assert response.status_code == 503
        assert response.json()["detail"] == "File storage is temporarily unavailable"

    def test_delete(self, client, login, alice, manager, store):
        login(alice)
        job_id = done_job(manager, store)

        response = client.delete(f"/api/jobs/{job_id}")

        assert response.status_code == 200
        assert response.json() == {"deleted": True}
        assert manager.find_job(job_id) is None


class TestAggregates:
    def test_zip(self, client, login, alice, manager, store):
        login(alice)
        first = done_job(manager, store, name="a.pdf", data=b"a")
        second = done_job(manager, store, name="b.pdf", data=b"b")

        response = client.post("/api/jobs/zip", json={"ids": [first, second]})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        with zipfile.ZipFile(BytesIO(response.content)) as archive:
            assert sorted(archive.namelist()) == ["a.pdf", "b.pdf"]

    def test_zip_of_other_users_jobs(self, client, login, bob, manager, store):
        login(bob)
        job_id = done_job(manager, store)
        assert client.post("/api/jobs/zip", json={"ids": [job_id]}).status_code == 400

    def test_merge_without_selection(self, client, login, alice):
        login(alice)
        assert client.post("/api/jobs/merge-pdf", json={"ids": []}).status_code == 400

    def test_print_without_print_client(self, client, login, alice, manager, store):
        login(alice)
        job_id = done_job(manager, store)

        response = client.post(f"/api/jobs/{job_id}/print", json={"destination": "Office"})

        assert response.status_code == 400


class TestAdminRoutes:
    def test_admin_delete(self, client, login, admin, manager, store):
        login(admin)
        job_id = done_job(manager, store)

        response = client.delete(f"/api/jobs/admin/{job_id}")

        assert response.status_code == 200
        assert manager.find_job(job_id) is None

    def test_failed_queue_items_and_requeue(self, client, login, admin, operations, queue, alice):
        login(admin)

        async def stage_and_bury():
            await operations.enqueue(alice, "report.pdf", {})
            item = await queue.claim("w", timeout=0.1)
            await queue.bury(item, "boom")
            return item

        item = asyncio.run(stage_and_bury())

        response = client.get("/api/jobs/admin/queue/failed")
        assert response.status_code == 200
        assert [i["id"] for i in response.json()] == [item.id]
        assert response.json()[0]["last_error"] == "boom"

        response = client.post(f"/api/jobs/admin/queue/{item.id}/requeue")
        assert response.status_code == 200
        assert response.json()["attempts"] == 0

        assert client.post("/api/jobs/admin/queue/unknown/requeue").status_code == 404
