from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from renderfleet.config import get_settings
from renderfleet.models.database import async_session_maker
from renderfleet.services.cloud_run import CloudRunPlatform
from renderfleet.services.log_service import LogService
from renderfleet.services.permission_validator import PermissionValidator
from renderfleet.services.render_job_store import RenderJobStore
from renderfleet.services.render_service import RenderService
from renderfleet.services.site_service import SiteService
from renderfleet.services.storage_service import ArtifactStore, get_storage_service
from renderfleet.services.worker_manager import WorkerDeploymentManager
from renderfleet.utils.google_auth import GoogleAuth


@lru_cache
def get_google_auth() -> GoogleAuth:
    settings = get_settings()
    return GoogleAuth(project_id=settings.gcp_project_id or None)


@lru_cache
def get_worker_manager() -> WorkerDeploymentManager:
    settings = get_settings()
    return WorkerDeploymentManager(CloudRunPlatform(settings, get_google_auth()), settings)


def get_site_service() -> SiteService:
    return SiteService(get_storage_service())


def get_permission_validator() -> PermissionValidator:
    return PermissionValidator(get_settings(), get_google_auth())


def get_log_service() -> LogService:
    return LogService(get_settings(), get_google_auth())


@lru_cache
def get_job_store() -> RenderJobStore:
    return RenderJobStore(async_session_maker)


@lru_cache
def get_render_service() -> RenderService:
    # One instance per process so cancel() can reach running renders
    return RenderService(
        get_worker_manager(),
        get_storage_service(),
        settings=get_settings(),
        job_store=get_job_store(),
        validator=get_permission_validator(),
    )


Store = Annotated[ArtifactStore, Depends(get_storage_service)]
Manager = Annotated[WorkerDeploymentManager, Depends(get_worker_manager)]
Sites = Annotated[SiteService, Depends(get_site_service)]
Validator = Annotated[PermissionValidator, Depends(get_permission_validator)]
Logs = Annotated[LogService, Depends(get_log_service)]
JobStore = Annotated[RenderJobStore, Depends(get_job_store)]
Renders = Annotated[RenderService, Depends(get_render_service)]
