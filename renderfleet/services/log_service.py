"""Worker log links and log retrieval from Cloud Logging."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import AccessDeniedError, PlatformError
from renderfleet.utils.google_auth import GoogleAuth

logger = logging.getLogger(__name__)

CONSOLE_LOGS_URL = "https://console.cloud.google.com/logs/viewer"


def log_filter(service: str, job_id: str | None = None) -> str:
    parts = [
        'resource.type="cloud_run_revision"',
        f'resource.labels.service_name="{service}"',
    ]
    if job_id:
        parts.append(f'jsonPayload.job_id="{job_id}"')
    return "\n".join(parts)


def build_logs_url(project: str, region: str, service: str, job_id: str | None = None) -> str:
    """Console link to a worker's logs, narrowed to one render job when given."""
    query = log_filter(service, job_id) + f'\nresource.labels.location="{region}"'
    return f"{CONSOLE_LOGS_URL}?project={quote(project)}&advancedFilter={quote(query)}"


class LogService:
    def __init__(
        self,
        settings: Settings | None = None,
        auth: GoogleAuth | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.auth = auth or GoogleAuth(project_id=self.settings.gcp_project_id or None)
        self._transport = transport

    def logs_url(self, region: str, service: str, job_id: str | None = None) -> str:
        return build_logs_url(self.auth.project_id or "", region, service, job_id)

    async def fetch_worker_logs(
        self, service: str, job_id: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        """Newest-first log entries for a worker service."""
        body = {
            "resourceNames": [f"projects/{self.auth.project_id}"],
            "filter": log_filter(service, job_id),
            "orderBy": "timestamp desc",
            "pageSize": limit,
        }
        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.settings.logging_api_url}/entries:list",
                    json=body,
                    headers=await self.auth.headers(),
                )
            except httpx.TransportError as e:
                raise PlatformError(f"entries:list: {e}", http_status=503, status="UNAVAILABLE") from e

        if response.status_code == 403:
            raise AccessDeniedError(response.text)
        if response.is_error:
            raise PlatformError(response.text, http_status=response.status_code)

        entries = []
        for entry in response.json().get("entries", []):
            entries.append(
                {
                    "timestamp": entry.get("timestamp"),
                    "severity": entry.get("severity", "DEFAULT"),
                    "message": entry.get("textPayload") or entry.get("jsonPayload", {}).get("message", ""),
                }
            )
        return entries
