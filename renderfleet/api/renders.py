"""Render endpoints.

``POST /api/renders`` runs the render to completion before answering;
progress can be polled from another request meanwhile.
"""

import logging

from fastapi import APIRouter, status

from renderfleet.api.deps import JobStore, Renders
from renderfleet.middleware.request_context import create_request_context, envelope
from renderfleet.schemas.envelope import EnvelopeResponse
from renderfleet.schemas.render import RenderJobResponse, RenderRequest

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
async def start_render(render_request: RenderRequest, renders: Renders) -> EnvelopeResponse:
    context = create_request_context()
    outcome = await renders.start_render(render_request)
    result = outcome.result
    error = result.error.to_error_info() if result.error else None
    return envelope(context, outcome.to_dict(), error)


@router.get("", response_model=EnvelopeResponse)
async def list_renders(jobs: JobStore, limit: int = 20) -> EnvelopeResponse:
    context = create_request_context()
    records = await jobs.list_recent(limit)
    return envelope(context, [RenderJobResponse.model_validate(r) for r in records])


@router.get("/{job_id}", response_model=EnvelopeResponse)
async def get_render_progress(job_id: str, renders: Renders) -> EnvelopeResponse:
    context = create_request_context()
    record = await renders.get_progress(job_id)
    return envelope(context, RenderJobResponse.model_validate(record))


@router.post("/{job_id}/cancel", response_model=EnvelopeResponse, status_code=status.HTTP_202_ACCEPTED)
async def cancel_render(job_id: str, renders: Renders) -> EnvelopeResponse:
    context = create_request_context()
    renders.cancel(job_id)
    return envelope(context, {"job_id": job_id, "cancelling": True})
