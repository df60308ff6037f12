"""Worker deployment manager.

``ensure_worker`` is the idempotency boundary: callers may call it as often
as they like, a worker is provisioned at most once per derived name.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Protocol

from renderfleet.config import Settings, get_settings
from renderfleet.constants.regions import CLOUD_RUN_REGIONS, ENHANCED_MONITORING_UNSUPPORTED
from renderfleet.exceptions import (
    PlatformError,
    ProvisioningFailedError,
    RenderfleetError,
    UnsupportedConfigurationError,
)
from renderfleet.schemas.render import ChunkInvocationRequest, ChunkInvocationResponse
from renderfleet.schemas.worker import DeleteResult, DeployedWorker, EnsureWorkerResult, WorkerConfig
from renderfleet.services.naming import derive_name

logger = logging.getLogger(__name__)


class WorkerPlatform(Protocol):
    """Hosting platform operations the manager relies on."""

    async def get_worker(self, region: str, name: str) -> DeployedWorker | None: ...

    async def create_worker(self, region: str, name: str, config: WorkerConfig) -> DeployedWorker: ...

    async def list_workers(self, region: str) -> list[DeployedWorker]: ...

    async def delete_worker(self, region: str, name: str) -> None: ...

    async def invoke(
        self, worker: DeployedWorker, request: ChunkInvocationRequest, timeout_s: float
    ) -> ChunkInvocationResponse: ...


class WorkerDeploymentManager:
    """Creates, lists, deletes and invokes render workers."""

    def __init__(
        self,
        platform: WorkerPlatform,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.platform = platform
        self.settings = settings or get_settings()
        self._sleep = sleep
        self._locks: dict[tuple[str, str], asyncio.Lock] = defaultdict(asyncio.Lock)

    def resolve_config(self, config: WorkerConfig) -> WorkerConfig:
        """Fill region and family from settings; identity fields are never defaulted here."""
        return config.model_copy(
            update={
                "region": config.region or self.settings.default_region,
                "family": config.family or self.settings.worker_family,
            }
        )

    def name_for(self, config: WorkerConfig) -> str:
        return derive_name(self.resolve_config(config))

    @staticmethod
    def check_supported(config: WorkerConfig) -> None:
        """Fail fast on region/feature combinations the platform rejects."""
        region = config.region or ""
        if region not in CLOUD_RUN_REGIONS:
            raise UnsupportedConfigurationError(f"Unknown Cloud Run region: {region!r}", region=region)
        if config.enhanced_monitoring and region in ENHANCED_MONITORING_UNSUPPORTED:
            raise UnsupportedConfigurationError(region=region, feature="enhanced_monitoring")
        if config.network and config.network.egress and not config.network.vpc_connector:
            raise UnsupportedConfigurationError(
                "Network egress settings require a VPC connector",
                region=region,
                feature="network.egress",
            )

    async def ensure_worker(self, config: WorkerConfig) -> EnsureWorkerResult:
        """Return the worker for a config, provisioning it if it does not exist.

        Safe under concurrent callers: callers in this process serialise on
        a per-name lock, and a creation race lost to another process shows
        up as ALREADY_EXISTS, which is reported as ``already_existed=True``.
        """
        config = self.resolve_config(config)
        name = derive_name(config)
        self.check_supported(config)
        region = config.region

        async with self._locks[(region, name)]:
            existing = await self.platform.get_worker(region, name)
            if existing is not None:
                logger.info(f"[DEPLOY] Worker {name} already exists in {region}")
                return EnsureWorkerResult(worker=existing, already_existed=True)

            try:
                worker = await self._provision(region, name, config)
            except PlatformError as e:
                if not e.already_exists:
                    raise
                existing = await self.platform.get_worker(region, name)
                if existing is None:
                    raise ProvisioningFailedError(name, e) from e
                logger.info(f"[DEPLOY] Worker {name} was created concurrently; reusing it")
                return EnsureWorkerResult(worker=existing, already_existed=True)

        return EnsureWorkerResult(worker=worker, already_existed=False)

    async def _provision(self, region: str, name: str, config: WorkerConfig) -> DeployedWorker:
        max_attempts = max(1, self.settings.provisioning_max_attempts)
        delay = self.settings.provisioning_backoff_s

        for attempt in range(1, max_attempts + 1):
            try:
                logger.info(f"[DEPLOY] Provisioning {name} in {region} (attempt {attempt}/{max_attempts})")
                return await self.platform.create_worker(region, name, config)
            except PlatformError as e:
                if e.already_exists:
                    raise
                if not e.transient or attempt == max_attempts:
                    raise ProvisioningFailedError(name, e, attempts=attempt) from e
                logger.warning(
                    f"[DEPLOY] Transient provisioning error for {name}: {e.message}. "
                    f"Retrying in {delay:.1f} seconds..."
                )
                await self._sleep(delay)
                delay *= 2

        raise AssertionError("unreachable")

    async def get_worker(self, name: str, region: str | None = None) -> DeployedWorker | None:
        return await self.platform.get_worker(region or self.settings.default_region, name)

    async def list_workers(self, region: str | None = None) -> list[DeployedWorker]:
        return await self.platform.list_workers(region or self.settings.default_region)

    async def delete_worker(self, name: str, region: str | None = None) -> None:
        await self.platform.delete_worker(region or self.settings.default_region, name)

    async def delete_all_workers(self, region: str | None = None) -> list[DeleteResult]:
        """Delete every family worker in a region.

        Best-effort: a failing delete is recorded and the rest still run.
        """
        region = region or self.settings.default_region
        results: list[DeleteResult] = []
        for worker in await self.list_workers(region):
            try:
                await self.platform.delete_worker(region, worker.name)
            except RenderfleetError as e:
                logger.warning(f"[DEPLOY] Failed to delete {worker.name}: {e.message}")
                results.append(DeleteResult(name=worker.name, deleted=False, error=e.message))
                continue
            results.append(DeleteResult(name=worker.name, deleted=True))
        return results

    async def invoke(
        self,
        worker: DeployedWorker,
        request: ChunkInvocationRequest,
        timeout_s: float,
    ) -> ChunkInvocationResponse:
        return await self.platform.invoke(worker, request, timeout_s)
