"""Render entry point shared by the HTTP API and the CLI.

Wires the pieces together for one render: permission pre-flight, worker
provisioning, site resolution, the orchestrator run, job persistence and
the completion webhook.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import NotFoundError, RenderfleetError
from renderfleet.render.orchestrator import RenderJob, RenderOrchestrator, RenderResult
from renderfleet.render.stitcher import FFmpegConcatStitcher, Stitcher
from renderfleet.schemas.render import RenderRequest
from renderfleet.schemas.worker import DeployedWorker, WorkerConfig
from renderfleet.services.log_service import build_logs_url
from renderfleet.services.naming import make_job_id
from renderfleet.services.permission_validator import PermissionValidator
from renderfleet.services.render_job_store import RenderJobStore
from renderfleet.services.site_service import SiteService
from renderfleet.services.storage_service import ArtifactStore
from renderfleet.services.webhook_service import WebhookDelivery, WebhookReporter
from renderfleet.services.worker_manager import WorkerDeploymentManager

logger = logging.getLogger(__name__)


@dataclass
class RenderOutcome:
    result: RenderResult
    worker: DeployedWorker
    output_url: str | None = None
    webhook: WebhookDelivery | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self.result.to_dict()
        data["worker_name"] = self.worker.name
        data["output_url"] = self.output_url
        data["webhook_delivered"] = self.webhook.delivered if self.webhook else None
        return data


class RenderService:
    def __init__(
        self,
        manager: WorkerDeploymentManager,
        store: ArtifactStore,
        *,
        settings: Settings | None = None,
        job_store: RenderJobStore | None = None,
        validator: PermissionValidator | None = None,
        reporter: WebhookReporter | None = None,
        stitcher: Stitcher | None = None,
    ) -> None:
        self.manager = manager
        self.store = store
        self.settings = settings or get_settings()
        self.job_store = job_store
        self.validator = validator
        self.reporter = reporter or WebhookReporter(self.settings)
        self.stitcher = stitcher or FFmpegConcatStitcher(store, self.settings)
        self.sites = SiteService(store)
        self._running: dict[str, RenderOrchestrator] = {}

    def worker_config(self, request: RenderRequest) -> WorkerConfig:
        return WorkerConfig(
            version=request.version or self.settings.worker_default_version,
            memory=request.memory or self.settings.worker_default_memory,
            cpu=request.cpu or self.settings.worker_default_cpu,
            timeout_seconds=request.timeout_seconds or self.settings.worker_default_timeout_seconds,
            region=request.region or self.settings.default_region,
        )

    def build_job(self, request: RenderRequest, worker: DeployedWorker, site_ref: str, job_id: str) -> RenderJob:
        s = self.settings
        return RenderJob(
            job_id=job_id,
            site_ref=site_ref,
            worker=worker,
            composition=request.composition,
            duration_ms=request.duration_ms,
            fps=request.fps,
            region=worker.region,
            input_props=request.input_props,
            output_extension=request.output_extension or s.render_output_extension,
            chunk_duration_ms=(request.chunk_duration_s or s.render_chunk_duration_s) * 1000,
            concurrency_ceiling=request.concurrency_ceiling or s.render_concurrency_ceiling,
            requested_parallelism=request.requested_parallelism or s.render_requested_parallelism,
            max_attempts=request.max_attempts or s.render_max_attempts,
            retry_backoff_s=s.render_retry_backoff_s,
            retry_backoff_max_s=s.render_retry_backoff_max_s,
            invocation_timeout_s=worker.timeout_seconds,
            job_timeout_s=request.job_timeout_s or s.render_job_timeout_s,
        )

    def _log_url(self, worker: DeployedWorker, job_id: str) -> str:
        return build_logs_url(self.settings.gcp_project_id, worker.region, worker.name, job_id)

    async def start_render(self, request: RenderRequest) -> RenderOutcome:
        """Render a composition end to end and return the final outcome."""
        if self.validator is not None:
            await self.validator.ensure_permissions("render")

        ensured = await self.manager.ensure_worker(self.worker_config(request))
        worker = ensured.worker
        site_ref = await self.sites.resolve_serve_url_async(request.site, worker.region)
        job = self.build_job(request, worker, site_ref, request.job_id or make_job_id())

        on_progress = None
        if self.job_store is not None:
            await self.job_store.create(
                job_id=job.job_id,
                site_ref=site_ref,
                composition=request.composition,
                worker_name=worker.name,
                region=worker.region,
                webhook_url=request.webhook_url,
            )
            on_progress = self.job_store.update_progress

        orchestrator = RenderOrchestrator(
            self.manager,
            self.store,
            self.stitcher,
            on_progress=on_progress,
            log_url_builder=self._log_url,
        )
        self._running[job.job_id] = orchestrator
        try:
            result = await orchestrator.run(job)
        except (Exception, asyncio.CancelledError) as e:
            if self.job_store is not None:
                error = e if isinstance(e, RenderfleetError) else RenderfleetError(f"Render aborted: {e!r}")
                await self.job_store.fail(job.job_id, error)
            raise
        finally:
            self._running.pop(job.job_id, None)

        output_url = None
        if result.output_ref:
            try:
                output_url = await asyncio.to_thread(self.store.presign, result.output_ref, region=worker.region)
            except RenderfleetError as e:
                logger.warning(f"[RENDER] Could not presign {result.output_ref}: {e.message}")

        delivery = None
        if request.webhook_url:
            delivery = await self.reporter.notify(request.webhook_url, result, request.webhook_data)

        if self.job_store is not None:
            await self.job_store.finish(
                result,
                output_url=output_url,
                webhook_delivered=delivery.delivered if delivery else None,
            )
        return RenderOutcome(result=result, worker=worker, output_url=output_url, webhook=delivery)

    def cancel(self, job_id: str) -> None:
        orchestrator = self._running.get(job_id)
        if orchestrator is None:
            raise NotFoundError(f"running render {job_id}")
        logger.info(f"[RENDER] Cancelling {job_id}")
        orchestrator.cancel()

    async def get_progress(self, job_id: str):
        if self.job_store is None:
            raise NotFoundError(f"render job {job_id}")
        return await self.job_store.get(job_id)
