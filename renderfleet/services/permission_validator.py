"""Pre-flight permission checks.

Simulation is read-only: it asks IAM which of the required permissions the
caller holds (``projects.testIamPermissions``) and never exercises them.
"""

import logging

import httpx

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import (
    AccessDeniedError,
    InsufficientPermissionsError,
    InvalidConfigError,
    PlatformError,
)
from renderfleet.schemas.permissions import CapabilityCheck, PermissionReport
from renderfleet.utils.google_auth import GoogleAuth

logger = logging.getLogger(__name__)

_WORKERS_READ = ["run.services.get", "run.services.list"]
_WORKERS_WRITE = [
    "run.services.create",
    "run.operations.get",
    "iam.serviceAccounts.actAs",
]
_STORAGE_READ = ["storage.buckets.list", "storage.objects.list", "storage.objects.get"]
_STORAGE_WRITE = ["storage.buckets.create", "storage.objects.create", "storage.objects.delete"]

REQUIRED_CAPABILITIES: dict[str, list[str]] = {
    "workers.deploy": _WORKERS_READ + _WORKERS_WRITE,
    "workers.list": _WORKERS_READ,
    "workers.delete": _WORKERS_READ + ["run.services.delete", "run.operations.get"],
    "sites.deploy": _STORAGE_READ + _STORAGE_WRITE,
    "sites.list": _STORAGE_READ,
    "sites.delete": _STORAGE_READ + ["storage.objects.delete"],
    "render": _WORKERS_READ + ["run.routes.invoke"] + _STORAGE_READ + _STORAGE_WRITE,
    "logs": ["logging.logEntries.list"],
}

ALL_CAPABILITIES: list[str] = sorted({p for perms in REQUIRED_CAPABILITIES.values() for p in perms})


def required_for(operation: str | None) -> list[str]:
    if operation is None:
        return ALL_CAPABILITIES
    try:
        return REQUIRED_CAPABILITIES[operation]
    except KeyError:
        raise InvalidConfigError(f"Unknown operation: {operation}", field="operation") from None


class PermissionValidator:
    def __init__(
        self,
        settings: Settings | None = None,
        auth: GoogleAuth | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.auth = auth or GoogleAuth(project_id=self.settings.gcp_project_id or None)
        self._transport = transport

    async def simulate(self, required: list[str]) -> list[CapabilityCheck]:
        """Report, per capability, whether the current credentials hold it."""
        url = f"{self.settings.resource_manager_api_url}/projects/{self.auth.project_id}:testIamPermissions"
        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            try:
                response = await client.post(
                    url,
                    json={"permissions": required},
                    headers=await self.auth.headers(),
                )
            except httpx.TransportError as e:
                raise PlatformError(f"testIamPermissions: {e}", http_status=503, status="UNAVAILABLE") from e

        if response.status_code == 403:
            raise AccessDeniedError(response.text)
        if response.is_error:
            raise PlatformError(response.text, http_status=response.status_code)

        granted = set(response.json().get("permissions", []))
        return [CapabilityCheck(capability=p, allowed=p in granted) for p in required]

    async def validate(self, operation: str | None = None) -> PermissionReport:
        checks = await self.simulate(required_for(operation))
        report = PermissionReport(operation=operation, checks=checks)
        if report.missing:
            logger.warning(f"[PERMISSIONS] {operation or 'all'}: missing {', '.join(report.missing)}")
        return report

    async def ensure_permissions(self, operation: str) -> PermissionReport:
        """Raise InsufficientPermissionsError unless every capability is granted."""
        report = await self.validate(operation)
        if not report.ok:
            raise InsufficientPermissionsError(report.missing)
        return report
