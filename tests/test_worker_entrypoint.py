"""Tests for the chunk render worker."""

import json

import pytest
from fastapi.testclient import TestClient

from renderfleet.schemas.render import ChunkInvocationRequest
from renderfleet.worker_entrypoint import ChunkRenderer, create_worker_app


def _request(**overrides) -> ChunkInvocationRequest:
    fields = dict(
        job_id="job1",
        chunk_index=1,
        start_ms=20_000,
        end_ms=40_000,
        fps=30,
        site_ref="https://storage.example/sites/promo/index.html",
        worker_name="remotion--4-0-0--mem2gi--cpu1-0--t-300",
        composition="Main Title",
        output_key="renders/job1/chunks/00001-abc.mp4",
        input_props={"title": "Hello"},
    )
    fields.update(overrides)
    return ChunkInvocationRequest(**fields)


class TestBuildCommand:
    """Tests for ChunkRenderer.build_command."""

    def test_frame_range_and_quoting(self, settings, local_store):
        renderer = ChunkRenderer(local_store, settings)

        cmd = renderer.build_command(_request(), "/tmp/out.mp4", "/tmp/props.json")

        assert cmd[:3] == ["npx", "remotion", "render"]
        assert "Main Title" in cmd
        assert "--frames=600-1199" in cmd
        assert "--props=/tmp/props.json" in cmd


class TestRender:
    """Tests for ChunkRenderer.render with a stand-in renderer command."""

    @pytest.mark.asyncio
    async def test_uploads_rendered_chunk(self, settings, local_store):
        settings.chunk_render_command = "cp {props_path} {output_path}"

        response = await ChunkRenderer(local_store, settings).render(_request())

        assert response.success
        assert response.output_ref == "renders/job1/chunks/00001-abc.mp4"
        assert json.loads(local_store.get_object(response.output_ref)) == {"title": "Hello"}

    @pytest.mark.asyncio
    async def test_renderer_failure_is_reported(self, settings, local_store):
        settings.chunk_render_command = "false {output_path}"

        response = await ChunkRenderer(local_store, settings).render(_request())

        assert not response.success
        assert "exited with 1" in response.error_detail
        assert not local_store.object_exists("renders/job1/chunks/00001-abc.mp4")

    @pytest.mark.asyncio
    async def test_missing_renderer_binary(self, settings, local_store):
        settings.chunk_render_command = "/nonexistent/renderer {output_path}"

        response = await ChunkRenderer(local_store, settings).render(_request())

        assert not response.success
        assert "Could not start renderer" in response.error_detail


class TestWorkerApp:
    """Tests for the worker HTTP surface."""

    def test_health(self, settings, local_store):
        client = TestClient(create_worker_app(ChunkRenderer(local_store, settings)))
        assert client.get("/health").json() == {"status": "healthy"}

    def test_render_chunk(self, settings, local_store):
        settings.chunk_render_command = "cp {props_path} {output_path}"
        client = TestClient(create_worker_app(ChunkRenderer(local_store, settings)))

        response = client.post("/render-chunk", json=_request().model_dump(mode="json"))

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_rejects_malformed_payload(self, settings, local_store):
        client = TestClient(create_worker_app(ChunkRenderer(local_store, settings)))
        assert client.post("/render-chunk", json={"job_id": "job1"}).status_code == 422
