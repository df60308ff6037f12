"""API tests through FastAPI's TestClient.

Services are swapped in with ``app.dependency_overrides``; the lifespan
(database setup) is not entered because the client is not used as a
context manager.
"""

import json
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakePlatform
from renderfleet.api import deps
from renderfleet.exceptions import PlatformError
from renderfleet.main import app
from renderfleet.schemas.render import ChunkInvocationResponse
from renderfleet.services.permission_validator import ALL_CAPABILITIES, PermissionValidator
from renderfleet.services.render_service import RenderService
from renderfleet.services.site_service import SiteService
from renderfleet.services.webhook_service import WebhookReporter
from renderfleet.services.worker_manager import WorkerDeploymentManager

WORKER_BODY = {"version": "4.0.0", "memory": "2Gi", "cpu": "1", "timeout_seconds": 300}


class CopyStitcher:
    def __init__(self, store) -> None:
        self.store = store

    async def stitch(self, chunk_refs, output_key, *, region=None):
        self.store.put_object(output_key, b"".join(self.store.get_object(r, region=region) for r in chunk_refs))
        return output_key


class StorePlatform(FakePlatform):
    def __init__(self, store) -> None:
        super().__init__()
        self.store = store

    async def invoke(self, worker, request, timeout_s):
        self.store.put_object(request.output_key, b"chunk")
        return ChunkInvocationResponse(success=True, output_ref=request.output_key)


@pytest.fixture
def platform(local_store):
    return StorePlatform(local_store)


@pytest.fixture
def granted():
    """IAM permissions the simulated caller holds; tests remove entries to deny."""
    return set(ALL_CAPABILITIES)


@pytest.fixture
def client(settings, local_store, platform, fake_auth, recording_sleep, granted):
    manager = WorkerDeploymentManager(platform, settings, sleep=recording_sleep)

    def iam(request):
        asked = json.loads(request.content)["permissions"]
        return httpx.Response(200, json={"permissions": [p for p in asked if p in granted]})

    validator = PermissionValidator(settings, auth=fake_auth, transport=httpx.MockTransport(iam))
    renders = RenderService(
        manager,
        local_store,
        settings=settings,
        reporter=WebhookReporter(settings, sleep=recording_sleep),
        stitcher=CopyStitcher(local_store),
    )

    app.dependency_overrides[deps.get_worker_manager] = lambda: manager
    app.dependency_overrides[deps.get_storage_service] = lambda: local_store
    app.dependency_overrides[deps.get_site_service] = lambda: SiteService(local_store)
    app.dependency_overrides[deps.get_permission_validator] = lambda: validator
    app.dependency_overrides[deps.get_render_service] = lambda: renders
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def bundle(tmp_path):
    root = tmp_path / "bundle"
    root.mkdir()
    (root / "index.html").write_text("<html></html>")
    return root


class TestHealth:
    """Tests for /health."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestWorkersApi:
    """Tests for /api/workers."""

    def test_deploy_is_idempotent(self, client, platform):
        first = client.post("/api/workers", json=WORKER_BODY)
        second = client.post("/api/workers", json=WORKER_BODY)

        assert first.status_code == 201
        assert first.json()["data"]["already_existed"] is False
        assert first.json()["data"]["worker"]["name"] == "remotion--4-0-0--mem2gi--cpu1-0--t-300"
        assert second.json()["data"]["already_existed"] is True
        assert second.json()["meta"]["warnings"]
        assert len(platform.create_calls) == 1

    def test_deploy_requires_permissions(self, client, platform, granted):
        granted.discard("run.services.create")

        response = client.post("/api/workers", json=WORKER_BODY)

        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "INSUFFICIENT_PERMISSIONS"
        assert error["details"]["missing"] == ["run.services.create"]
        assert platform.create_calls == []

    def test_invalid_config_uses_error_envelope(self, client):
        response = client.post("/api/workers", json={**WORKER_BODY, "memory": "2GB"})

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "INVALID_CONFIG"
        assert body["error"]["location"]["field"] == "memory"
        assert "data" not in body

    def test_unsupported_region(self, client):
        response = client.post("/api/workers", json={**WORKER_BODY, "region": "mars-north1"})
        assert response.json()["error"]["code"] == "UNSUPPORTED_CONFIGURATION"

    def test_get_missing_worker(self, client):
        response = client.get("/api/workers/remotion--9-9-9--mem1gi--cpu1-0--t-1")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_list_and_bulk_delete(self, client, platform):
        client.post("/api/workers", json=WORKER_BODY)
        client.post("/api/workers", json={**WORKER_BODY, "memory": "4Gi"})
        platform.delete_errors["remotion--4-0-0--mem4gi--cpu1-0--t-300"] = PlatformError("busy", http_status=409)

        assert len(client.get("/api/workers").json()["data"]) == 2
        response = client.delete("/api/workers")

        body = response.json()
        assert response.status_code == 200
        assert [r["deleted"] for r in body["data"]] == [True, False]
        assert "remotion--4-0-0--mem4gi--cpu1-0--t-300" in body["meta"]["warnings"][0]

    def test_delete_worker(self, client):
        client.post("/api/workers", json=WORKER_BODY)

        response = client.delete("/api/workers/remotion--4-0-0--mem2gi--cpu1-0--t-300")

        assert response.json()["data"] == {"name": "remotion--4-0-0--mem2gi--cpu1-0--t-300", "deleted": True}
        assert client.get("/api/workers").json()["data"] == []


class TestSitesApi:
    """Tests for /api/sites."""

    def test_deploy_list_delete(self, client, bundle):
        deployed = client.post("/api/sites", json={"bundle_dir": str(bundle), "site_name": "promo"})
        assert deployed.status_code == 201
        assert deployed.json()["data"]["uploaded"] == 1

        listed = client.get("/api/sites").json()["data"]
        assert [s["site_id"] for s in listed] == ["promo"]

        deleted = client.delete("/api/sites/promo").json()["data"]
        assert deleted["failed"] == 0
        assert client.delete("/api/sites/promo").status_code == 404


class TestRendersApi:
    """Tests for /api/renders."""

    def test_render_completes(self, client, bundle):
        client.post("/api/sites", json={"bundle_dir": str(bundle), "site_name": "promo"})

        response = client.post(
            "/api/renders",
            json={"site": "promo", "composition": "Main", "duration_ms": 50_000, "job_id": "job1"},
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["state"] == "completed"
        assert data["output_ref"] == "renders/job1/out.mp4"
        assert data["progress"]["total_chunks"] == 3
        assert data["output_url"]

    def test_request_validation_error(self, client):
        response = client.post("/api/renders", json={"site": "promo", "duration_ms": -1})

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_progress_without_job_store(self, client):
        response = client.get("/api/renders/job1")
        assert response.status_code == 404

    def test_cancel_unknown_render(self, client):
        response = client.post("/api/renders/nope/cancel")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"


class TestPermissionsApi:
    """Tests for /api/permissions."""

    def test_reports_missing(self, client, granted):
        granted.discard("run.services.list")

        body = client.get("/api/permissions", params={"operation": "workers.list"}).json()

        assert body["data"]["ok"] is False
        assert body["data"]["missing"] == ["run.services.list"]

    def test_granted_operation(self, client):
        assert client.get("/api/permissions", params={"operation": "logs"}).json()["data"]["ok"] is True

    def test_unknown_operation(self, client):
        response = client.get("/api/permissions", params={"operation": "nope"})
        assert response.status_code == 400


class TestStorageApi:
    """Tests for /api/storage/files (local storage mode)."""

    def test_serves_deployed_site(self, client, bundle):
        site = client.post("/api/sites", json={"bundle_dir": str(bundle), "site_name": "promo"}).json()["data"]["site"]

        response = client.get(site["serve_url"])

        assert response.status_code == 200
        assert response.text == "<html></html>"
        assert response.headers["content-type"].startswith("text/html")

    def test_serves_render_output(self, client, bundle):
        client.post("/api/sites", json={"bundle_dir": str(bundle), "site_name": "promo"})
        data = client.post(
            "/api/renders",
            json={"site": "promo", "composition": "Main", "duration_ms": 50_000, "job_id": "job1"},
        ).json()["data"]

        response = client.get(data["output_url"])

        assert response.status_code == 200
        assert response.content == b"chunk" * 3
        assert response.headers["content-type"] == "video/mp4"

    def test_expired_link(self, client, local_store):
        local_store.put_object("renders/j/out.mp4", b"v")

        response = client.get(local_store.public_url("renders/j/out.mp4"), params={"expires": int(time.time()) - 60})

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ACCESS_DENIED"

    def test_missing_file(self, client):
        response = client.get("/api/storage/files/renderfleet-us-east1-local/renders/nope.mp4")
        assert response.status_code == 404
