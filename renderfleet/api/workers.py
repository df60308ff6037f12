"""Worker deployment endpoints."""

import logging

from fastapi import APIRouter, status

from renderfleet.api.deps import Logs, Manager, Validator
from renderfleet.exceptions import NotFoundError
from renderfleet.middleware.request_context import create_request_context, envelope
from renderfleet.schemas.envelope import EnvelopeResponse
from renderfleet.schemas.worker import WorkerConfig

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
async def deploy_worker(config: WorkerConfig, manager: Manager, validator: Validator) -> EnvelopeResponse:
    """Provision the worker for a configuration, or return the existing one."""
    context = create_request_context()
    await validator.ensure_permissions("workers.deploy")
    result = await manager.ensure_worker(config)
    if result.already_existed:
        context.warnings.append(f"Worker {result.worker.name} already existed")
    return envelope(context, result)


@router.get("", response_model=EnvelopeResponse)
async def list_workers(manager: Manager, region: str | None = None) -> EnvelopeResponse:
    context = create_request_context()
    return envelope(context, await manager.list_workers(region))


@router.get("/{name}", response_model=EnvelopeResponse)
async def get_worker(name: str, manager: Manager, region: str | None = None) -> EnvelopeResponse:
    context = create_request_context()
    worker = await manager.get_worker(name, region)
    if worker is None:
        raise NotFoundError(f"worker {name}")
    return envelope(context, worker)


@router.delete("/{name}", response_model=EnvelopeResponse)
async def delete_worker(name: str, manager: Manager, region: str | None = None) -> EnvelopeResponse:
    context = create_request_context()
    await manager.delete_worker(name, region)
    return envelope(context, {"name": name, "deleted": True})


@router.delete("", response_model=EnvelopeResponse)
async def delete_all_workers(manager: Manager, region: str | None = None) -> EnvelopeResponse:
    """Best-effort bulk delete; per-worker failures are reported, not raised."""
    context = create_request_context()
    results = await manager.delete_all_workers(region)
    failed = [r.name for r in results if not r.deleted]
    if failed:
        context.warnings.append(f"Failed to delete: {', '.join(failed)}")
    return envelope(context, results)


@router.get("/{name}/logs", response_model=EnvelopeResponse)
async def worker_logs(
    name: str,
    logs: Logs,
    manager: Manager,
    region: str | None = None,
    job_id: str | None = None,
    limit: int = 100,
) -> EnvelopeResponse:
    context = create_request_context()
    region = region or manager.settings.default_region
    entries = await logs.fetch_worker_logs(name, job_id, limit)
    return envelope(context, {"url": logs.logs_url(region, name, job_id), "entries": entries})
