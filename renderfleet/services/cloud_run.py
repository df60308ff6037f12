"""Cloud Run Admin API v2 client: the worker registry and the invoke path.

Services are the shared, cross-process worker registry: a worker is found by
its derived name, and creation relies on the API's create-if-absent
semantics (``ALREADY_EXISTS`` when another caller won the race).
"""

import asyncio
import logging
import re
import time
from datetime import datetime
from typing import Any

import httpx

from renderfleet.config import Settings, get_settings
from renderfleet.exceptions import (
    InvocationFailedError,
    InvocationTimeoutError,
    NotFoundError,
    PlatformError,
)
from renderfleet.schemas.render import ChunkInvocationRequest, ChunkInvocationResponse
from renderfleet.schemas.worker import DeployedWorker, NetworkConfig, WorkerConfig
from renderfleet.services.naming import is_family_name, version_token
from renderfleet.utils.google_auth import GoogleAuth

logger = logging.getLogger(__name__)

RENDER_CHUNK_PATH = "/render-chunk"
OPERATION_POLL_INTERVAL_S = 2.0
OPERATION_MAX_WAIT_S = 600.0

_GRPC_HTTP = {
    "ALREADY_EXISTS": 409,
    "ABORTED": 409,
    "NOT_FOUND": 404,
    "PERMISSION_DENIED": 403,
    "RESOURCE_EXHAUSTED": 429,
    "UNAVAILABLE": 503,
    "DEADLINE_EXCEEDED": 504,
    "INVALID_ARGUMENT": 400,
}
_GRPC_CODES = {
    4: "DEADLINE_EXCEEDED",
    3: "INVALID_ARGUMENT",
    5: "NOT_FOUND",
    6: "ALREADY_EXISTS",
    7: "PERMISSION_DENIED",
    8: "RESOURCE_EXHAUSTED",
    10: "ABORTED",
    14: "UNAVAILABLE",
}
_EGRESS = {"all-traffic": "ALL_TRAFFIC", "private-ranges-only": "PRIVATE_RANGES_ONLY"}
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def quantity_to_mb(quantity: str) -> int:
    """Convert a Kubernetes-style memory quantity (``2Gi``, ``512Mi``) to MiB."""
    text = quantity.strip()
    if text.endswith("Gi"):
        return int(float(text[:-2]) * 1024)
    if text.endswith("Mi"):
        return int(float(text[:-2]))
    if text.endswith("G"):
        return int(float(text[:-1]) * 1000**3 / 1024**2)
    if text.endswith("M"):
        return int(float(text[:-1]) * 1000**2 / 1024**2)
    return int(text) // 1024**2


def _parse_timestamp(value: str | None) -> datetime | None:
    """Parse RFC 3339 timestamps with nanosecond precision."""
    if not value:
        return None
    value = _FRACTION_RE.sub(r"\1", value.replace("Z", "+00:00"))
    return datetime.fromisoformat(value)


def build_service_body(config: WorkerConfig, settings: Settings) -> dict[str, Any]:
    """Build the Cloud Run ``Service`` resource for a worker configuration."""
    env = [
        {"name": "RENDERFLEET_WORKER_VERSION", "value": str(config.version)},
        # Chunk outputs go to the bucket of the worker's own region
        {"name": "RENDERFLEET_DEFAULT_REGION", "value": str(config.region)},
        {"name": "RENDERFLEET_USE_LOCAL_STORAGE", "value": "false"},
    ]
    if config.enhanced_monitoring:
        env.append({"name": "RENDERFLEET_ENHANCED_MONITORING", "value": "1"})

    template: dict[str, Any] = {
        "containers": [
            {
                "image": settings.worker_image.format(version=config.version),
                "resources": {
                    "limits": {"memory": config.memory, "cpu": str(config.cpu)},
                    "cpuIdle": False,
                },
                "env": env,
            }
        ],
        "timeout": f"{config.timeout_seconds}s",
        # One chunk per instance keeps renders isolated
        "maxInstanceRequestConcurrency": 1,
        "scaling": {
            "minInstanceCount": config.min_instances,
            "maxInstanceCount": config.max_instances or settings.worker_max_instances,
        },
    }
    service_account = config.service_account or settings.worker_service_account
    if service_account:
        template["serviceAccount"] = service_account
    if config.network and config.network.vpc_connector:
        template["vpcAccess"] = {
            "connector": config.network.vpc_connector,
            "egress": _EGRESS[config.network.egress or "private-ranges-only"],
        }

    labels = {"managed-by": "renderfleet", "version": version_token(config.version)}
    if config.enhanced_monitoring:
        labels["enhanced-monitoring"] = "true"
    return {"labels": labels, "template": template, "ingress": "INGRESS_TRAFFIC_ALL"}


def service_to_worker(service: dict[str, Any], region: str) -> DeployedWorker:
    """Map a Cloud Run ``Service`` resource to a DeployedWorker."""
    template = service.get("template", {})
    container = (template.get("containers") or [{}])[0]
    limits = container.get("resources", {}).get("limits", {})
    labels = service.get("labels", {})

    network = None
    vpc = template.get("vpcAccess")
    if vpc:
        egress = {v: k for k, v in _EGRESS.items()}.get(vpc.get("egress", ""))
        network = NetworkConfig(vpc_connector=vpc.get("connector"), egress=egress)

    return DeployedWorker(
        name=service["name"].rsplit("/", 1)[-1],
        region=region,
        version=labels.get("version", "").replace("-", "."),
        memory_mb=quantity_to_mb(limits.get("memory", "512Mi")),
        cpu=str(limits.get("cpu", "1")),
        timeout_seconds=int(str(template.get("timeout", "300s")).rstrip("s")),
        url=service.get("uri"),
        created_at=_parse_timestamp(service.get("createTime")),
        network=network,
        labels=labels,
    )


def _error_from_response(response: httpx.Response) -> PlatformError:
    message = response.text
    status = None
    try:
        error = response.json().get("error", {})
        message = error.get("message", message)
        status = error.get("status")
    except ValueError:
        pass
    return PlatformError(message, http_status=response.status_code, status=status)


def _error_from_operation(error: dict[str, Any]) -> PlatformError:
    status = _GRPC_CODES.get(error.get("code", 0))
    return PlatformError(
        error.get("message", "Operation failed"),
        http_status=_GRPC_HTTP.get(status or "", 500),
        status=status,
    )


class CloudRunPlatform:
    """Worker platform backed by Cloud Run services."""

    def __init__(
        self,
        settings: Settings | None = None,
        auth: GoogleAuth | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        poll_interval_s: float = OPERATION_POLL_INTERVAL_S,
    ) -> None:
        self.settings = settings or get_settings()
        self.auth = auth or GoogleAuth(project_id=self.settings.gcp_project_id or None)
        self._transport = transport
        self._poll_interval_s = poll_interval_s

    def _client(self, timeout: float = 60.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.settings.cloud_run_api_url,
            timeout=timeout,
            transport=self._transport,
        )

    def _parent(self, region: str) -> str:
        return f"projects/{self.auth.project_id}/locations/{region}"

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await client.request(method, url, headers=await self.auth.headers(), **kwargs)
        except httpx.TransportError as e:
            raise PlatformError(f"{method} {url}: {e}", http_status=503, status="UNAVAILABLE") from e
        if response.is_error:
            raise _error_from_response(response)
        return response

    async def _wait_operation(self, client: httpx.AsyncClient, operation: dict[str, Any]) -> dict[str, Any]:
        deadline = time.monotonic() + OPERATION_MAX_WAIT_S
        while not operation.get("done"):
            if time.monotonic() > deadline:
                raise PlatformError(
                    f"Operation {operation.get('name')} did not finish",
                    http_status=504,
                    status="DEADLINE_EXCEEDED",
                )
            await asyncio.sleep(self._poll_interval_s)
            response = await self._request(client, "GET", f"/{operation['name']}")
            operation = response.json()
        if "error" in operation:
            raise _error_from_operation(operation["error"])
        return operation

    async def get_worker(self, region: str, name: str) -> DeployedWorker | None:
        async with self._client() as client:
            try:
                response = await self._request(client, "GET", f"/{self._parent(region)}/services/{name}")
            except PlatformError as e:
                if e.http_status == 404:
                    return None
                raise
        return service_to_worker(response.json(), region)

    async def create_worker(self, region: str, name: str, config: WorkerConfig) -> DeployedWorker:
        """Create the service and wait for it to become ready.

        Raises:
            PlatformError: ``already_exists`` is set when the name is taken.
        """
        body = build_service_body(config, self.settings)
        async with self._client() as client:
            response = await self._request(
                client,
                "POST",
                f"/{self._parent(region)}/services",
                params={"serviceId": name},
                json=body,
            )
            await self._wait_operation(client, response.json())
            response = await self._request(client, "GET", f"/{self._parent(region)}/services/{name}")
        logger.info(f"[DEPLOY] Created Cloud Run service {name} in {region}")
        return service_to_worker(response.json(), region)

    async def list_workers(self, region: str) -> list[DeployedWorker]:
        workers: list[DeployedWorker] = []
        page_token: str | None = None
        async with self._client() as client:
            while True:
                params = {"pageToken": page_token} if page_token else {}
                response = await self._request(
                    client, "GET", f"/{self._parent(region)}/services", params=params
                )
                page = response.json()
                for service in page.get("services", []):
                    worker = service_to_worker(service, region)
                    if is_family_name(worker.name, self.settings.worker_family):
                        workers.append(worker)
                page_token = page.get("nextPageToken")
                if not page_token:
                    break
        return workers

    async def delete_worker(self, region: str, name: str) -> None:
        async with self._client() as client:
            try:
                response = await self._request(
                    client, "DELETE", f"/{self._parent(region)}/services/{name}"
                )
            except PlatformError as e:
                if e.http_status == 404:
                    raise NotFoundError(f"worker {name} in {region}") from e
                raise
            await self._wait_operation(client, response.json())
        logger.info(f"[DEPLOY] Deleted Cloud Run service {name} in {region}")

    async def invoke(
        self,
        worker: DeployedWorker,
        request: ChunkInvocationRequest,
        timeout_s: float,
    ) -> ChunkInvocationResponse:
        """POST one chunk to the worker. The worker never retries by itself.

        Raises:
            InvocationTimeoutError: no answer before ``timeout_s``
            InvocationFailedError: transport failure or non-2xx answer
        """
        if not worker.url:
            raise InvocationFailedError(
                f"Worker {worker.name} has no URL",
                chunk_index=request.chunk_index,
                job_id=request.job_id,
                details={"transient": False},
            )
        headers = await self.auth.id_token_headers(worker.url)
        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                response = await client.post(
                    f"{worker.url}{RENDER_CHUNK_PATH}",
                    json=request.model_dump(mode="json"),
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise InvocationTimeoutError(
                f"Chunk {request.chunk_index} timed out after {timeout_s:.0f}s",
                chunk_index=request.chunk_index,
                job_id=request.job_id,
            ) from e
        except httpx.TransportError as e:
            raise InvocationFailedError(
                f"Chunk {request.chunk_index} transport error: {e}",
                chunk_index=request.chunk_index,
                job_id=request.job_id,
            ) from e

        if response.is_error:
            transient = response.status_code == 429 or response.status_code >= 500
            raise InvocationFailedError(
                f"Chunk {request.chunk_index} failed with HTTP {response.status_code}: {response.text[:500]}",
                chunk_index=request.chunk_index,
                job_id=request.job_id,
                details={"status_code": response.status_code, "transient": transient},
            )
        return ChunkInvocationResponse.model_validate(response.json())
