"""Tests for the end-to-end render entry point and job persistence."""

import json

import httpx
import pytest

from conftest import FakePlatform
from renderfleet.exceptions import (
    InsufficientPermissionsError,
    NotFoundError,
    PlatformError,
    ProvisioningFailedError,
)
from renderfleet.render.chunk_table import ChunkTable, JobState
from renderfleet.render.chunking import split_job
from renderfleet.schemas.render import ChunkInvocationResponse, RenderJobResponse, RenderRequest
from renderfleet.services.progress import compute_progress
from renderfleet.services.render_service import RenderService
from renderfleet.services.site_service import SiteService
from renderfleet.services.webhook_service import WebhookReporter, verify_signature
from renderfleet.services.worker_manager import WorkerDeploymentManager


class WritingStitcher:
    """Concatenates chunk bytes in the store, standing in for FFmpeg."""

    def __init__(self, store) -> None:
        self.store = store

    async def stitch(self, chunk_refs, output_key, *, region=None):
        data = b"".join(self.store.get_object(ref, region=region) for ref in chunk_refs)
        self.store.put_object(output_key, data, region=region)
        return output_key


class WritingPlatform(FakePlatform):
    """Workers that write their chunk index as the chunk output."""

    def __init__(self, store, failing_chunk: int | None = None) -> None:
        super().__init__()
        self.store = store
        self.failing_chunk = failing_chunk

    async def invoke(self, worker, request, timeout_s):
        if request.chunk_index == self.failing_chunk:
            return ChunkInvocationResponse(success=False, error_detail="out of memory")
        self.store.put_object(request.output_key, str(request.chunk_index).encode(), region=worker.region)
        return ChunkInvocationResponse(success=True, output_ref=request.output_key)


class BrokenStitcher:
    async def stitch(self, chunk_refs, output_key, *, region=None):
        raise RuntimeError("disk full")


class DenyingValidator:
    async def ensure_permissions(self, operation):
        raise InsufficientPermissionsError(["run.services.create"])


@pytest.fixture
def site(local_store, tmp_path):
    bundle = tmp_path / "bundle"
    bundle.mkdir()
    (bundle / "index.html").write_text("<html></html>")
    return SiteService(local_store).deploy_site(str(bundle), site_name="promo").site


def _service(settings, local_store, job_store, recording_sleep, platform=None, **kwargs) -> RenderService:
    platform = platform or WritingPlatform(local_store)
    manager = WorkerDeploymentManager(platform, settings, sleep=recording_sleep)
    kwargs.setdefault("reporter", WebhookReporter(settings, sleep=recording_sleep))
    kwargs.setdefault("stitcher", WritingStitcher(local_store))
    return RenderService(manager, local_store, settings=settings, job_store=job_store, **kwargs)


def _request(**overrides) -> RenderRequest:
    fields = dict(site="promo", composition="Main", duration_ms=45_000, job_id="job1", max_attempts=2)
    fields.update(overrides)
    return RenderRequest(**fields)


class TestStartRender:
    """Tests for RenderService.start_render."""

    @pytest.mark.asyncio
    async def test_renders_and_persists(self, settings, local_store, job_store, recording_sleep, site):
        service = _service(settings, local_store, job_store, recording_sleep)

        outcome = await service.start_render(_request())

        assert outcome.result.state is JobState.COMPLETED
        assert outcome.worker.name == "remotion--4-0-0--mem2gi--cpu1-0--t-300"
        assert local_store.get_object("renders/job1/out.mp4") == b"012"
        assert outcome.output_url.startswith("http://testserver/api/storage/files/")

        record = await job_store.get("job1")
        assert record.status == "completed"
        assert record.progress == 100.0
        assert (record.total_chunks, record.chunks_done) == (3, 3)
        assert record.site_ref == site.serve_url
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_failed_render_is_recorded(self, settings, local_store, job_store, recording_sleep, site):
        platform = WritingPlatform(local_store, failing_chunk=1)
        service = _service(settings, local_store, job_store, recording_sleep, platform=platform)

        outcome = await service.start_render(_request())

        assert outcome.result.state is JobState.FAILED
        assert outcome.output_url is None
        record = await job_store.get("job1")
        assert record.status == "failed"
        assert record.error_code == "INVOCATION_FAILED"
        assert record.unresolved_chunks == [1]
        assert "logs/viewer" in outcome.result.error.details["log_url"]

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, settings, local_store, job_store, recording_sleep, site):
        service = _service(settings, local_store, job_store, recording_sleep, stitcher=BrokenStitcher())

        with pytest.raises(RuntimeError):
            await service.start_render(_request())

        record = await job_store.get("job1")
        assert record.status == "failed"
        assert record.error_code == "INTERNAL_ERROR"
        assert "disk full" in record.error_message

    @pytest.mark.asyncio
    async def test_webhook_is_signed_and_recorded(self, settings, local_store, job_store, recording_sleep, site):
        received = []

        def handler(request):
            received.append(request)
            return httpx.Response(204)

        reporter = WebhookReporter(settings, transport=httpx.MockTransport(handler), sleep=recording_sleep)
        service = _service(settings, local_store, job_store, recording_sleep, reporter=reporter)

        outcome = await service.start_render(
            _request(webhook_url="https://hooks.example/done", webhook_data={"order": 7})
        )

        assert outcome.webhook.delivered
        body = json.loads(received[0].content)
        assert body["custom_data"] == {"order": 7}
        assert verify_signature(body, "s3cret")
        assert (await job_store.get("job1")).webhook_delivered is True

    @pytest.mark.asyncio
    async def test_permission_preflight_blocks_before_provisioning(
        self, settings, local_store, job_store, recording_sleep, site
    ):
        platform = WritingPlatform(local_store)
        service = _service(
            settings, local_store, job_store, recording_sleep, platform=platform, validator=DenyingValidator()
        )

        with pytest.raises(InsufficientPermissionsError):
            await service.start_render(_request())

        assert platform.create_calls == []

    @pytest.mark.asyncio
    async def test_provisioning_failure_propagates(self, settings, local_store, job_store, recording_sleep, site):
        platform = WritingPlatform(local_store)
        platform.create_errors = [PlatformError("bad image", http_status=400)]
        service = _service(settings, local_store, job_store, recording_sleep, platform=platform)

        with pytest.raises(ProvisioningFailedError):
            await service.start_render(_request())

    @pytest.mark.asyncio
    async def test_unknown_site(self, settings, local_store, job_store, recording_sleep):
        service = _service(settings, local_store, job_store, recording_sleep)
        with pytest.raises(NotFoundError):
            await service.start_render(_request(site="missing"))

    def test_build_job_applies_overrides(self, settings, local_store, recording_sleep, worker):
        service = _service(settings, local_store, None, recording_sleep)

        job = service.build_job(
            _request(chunk_duration_s=5, requested_parallelism=3, output_extension="webm"),
            worker,
            "https://site/index.html",
            "job1",
        )

        assert job.chunk_duration_ms == 5_000
        assert job.parallelism == 3
        assert job.output_extension == "webm"
        assert job.invocation_timeout_s == worker.timeout_seconds
        assert job.max_attempts == 2

    def test_cancel_unknown_job(self, settings, local_store, recording_sleep):
        service = _service(settings, local_store, None, recording_sleep)
        with pytest.raises(NotFoundError):
            service.cancel("nope")


class TestRenderJobStore:
    """Tests for RenderJobStore."""

    @pytest.mark.asyncio
    async def test_create_update_and_read(self, job_store):
        await job_store.create(
            job_id="j1", site_ref="https://site", composition="Main", worker_name="w", region="us-east1"
        )
        table = ChunkTable(split_job(60_000, 20_000, 1000), max_attempts=3)
        table.mark_in_flight(0)
        table.mark_done(0, "a")

        await job_store.update_progress(compute_progress(table, job_id="j1", stage=JobState.COLLECTING))

        record = await job_store.get("j1")
        response = RenderJobResponse.model_validate(record)
        assert response.status == "collecting"
        assert response.chunks_done == 1
        assert response.progress == pytest.approx(33.33)

    @pytest.mark.asyncio
    async def test_missing_job(self, job_store):
        with pytest.raises(NotFoundError):
            await job_store.get("nope")

    @pytest.mark.asyncio
    async def test_list_recent(self, job_store):
        for job_id in ("a", "b", "c"):
            await job_store.create(
                job_id=job_id, site_ref="s", composition="Main", worker_name="w", region="us-east1"
            )

        records = await job_store.list_recent(limit=2)

        assert len(records) == 2
