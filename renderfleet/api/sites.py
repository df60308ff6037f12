"""Site bundle endpoints."""

import asyncio

from fastapi import APIRouter, status
from pydantic import BaseModel

from renderfleet.api.deps import Sites
from renderfleet.middleware.request_context import create_request_context, envelope
from renderfleet.schemas.envelope import EnvelopeResponse

router = APIRouter()


class SiteDeployRequest(BaseModel):
    bundle_dir: str  # Path on the API host
    region: str | None = None
    site_name: str | None = None


@router.post("", response_model=EnvelopeResponse, status_code=status.HTTP_201_CREATED)
async def deploy_site(request: SiteDeployRequest, sites: Sites) -> EnvelopeResponse:
    context = create_request_context()
    result = await asyncio.to_thread(sites.deploy_site, request.bundle_dir, request.region, request.site_name)
    return envelope(context, result)


@router.get("", response_model=EnvelopeResponse)
async def list_sites(sites: Sites, region: str | None = None) -> EnvelopeResponse:
    context = create_request_context()
    return envelope(context, await asyncio.to_thread(sites.list_sites, region))


@router.delete("/{site_id}", response_model=EnvelopeResponse)
async def delete_site(site_id: str, sites: Sites, region: str | None = None) -> EnvelopeResponse:
    context = create_request_context()
    result = await asyncio.to_thread(sites.delete_site, site_id, region)
    if result.failed:
        context.warnings.append(f"{len(result.failed)} object(s) could not be deleted")
    return envelope(context, {**result.model_dump(mode="json"), "failed": len(result.failed)})
