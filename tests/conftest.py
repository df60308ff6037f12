"""
Pytest fixtures for renderfleet tests.

Cloud Run, GCS and IAM are replaced by in-memory fakes; storage tests use
the filesystem-backed store under a temporary directory.
"""

import asyncio
from typing import Any

import pytest
import pytest_asyncio

from renderfleet.config import Settings
from renderfleet.exceptions import NotFoundError, PlatformError, StitchFailedError
from renderfleet.models.database import create_engine_for, create_session_maker, init_db
from renderfleet.schemas.render import ChunkInvocationRequest, ChunkInvocationResponse
from renderfleet.schemas.worker import DeployedWorker, WorkerConfig
from renderfleet.services.cloud_run import quantity_to_mb
from renderfleet.services.render_job_store import RenderJobStore
from renderfleet.services.storage_service import LocalArtifactStore


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the environment and from .env files."""
    return Settings(
        _env_file=None,
        gcp_project_id="test-project",
        default_region="us-east1",
        local_storage_path=str(tmp_path / "storage"),
        local_storage_base_url="http://testserver/api/storage/files",
        webhook_secret="s3cret",
        webhook_backoff_s=0,
        provisioning_backoff_s=0.5,
        render_retry_backoff_s=1.0,
        database_url="sqlite+aiosqlite:///" + str(tmp_path / "jobs.db"),
    )


@pytest.fixture
def local_store(settings) -> LocalArtifactStore:
    return LocalArtifactStore(settings)


@pytest.fixture
def worker() -> DeployedWorker:
    return DeployedWorker(
        name="remotion--4-0-0--mem2gi--cpu1-0--t-300",
        region="us-east1",
        version="4.0.0",
        memory_mb=2048,
        cpu="1",
        timeout_seconds=300,
        url="https://remotion-4-0-0.a.run.app",
    )


class FakeAuth:
    """GoogleAuth stand-in with a fixed project and static tokens."""

    project_id = "test-project"

    async def headers(self) -> dict[str, str]:
        return {"Authorization": "Bearer access-token"}

    async def id_token_headers(self, audience: str) -> dict[str, str]:
        return {"Authorization": f"Bearer id-token-for-{audience}"}


@pytest.fixture
def fake_auth() -> FakeAuth:
    return FakeAuth()


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


class FakePlatform:
    """In-memory worker registry with create-if-absent semantics."""

    def __init__(self) -> None:
        self.workers: dict[tuple[str, str], DeployedWorker] = {}
        self.create_calls: list[str] = []
        self.create_errors: list[Exception] = []
        self.delete_errors: dict[str, Exception] = {}
        self.create_delay = 0.0

    async def get_worker(self, region: str, name: str) -> DeployedWorker | None:
        return self.workers.get((region, name))

    async def create_worker(self, region: str, name: str, config: WorkerConfig) -> DeployedWorker:
        self.create_calls.append(name)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_errors:
            raise self.create_errors.pop(0)
        if (region, name) in self.workers:
            raise PlatformError("already exists", http_status=409, status="ALREADY_EXISTS")
        worker = DeployedWorker(
            name=name,
            region=region,
            version=str(config.version),
            memory_mb=quantity_to_mb(config.memory),
            cpu=str(config.cpu),
            timeout_seconds=config.timeout_seconds,
            url=f"https://{name}.a.run.app",
        )
        self.workers[(region, name)] = worker
        return worker

    async def list_workers(self, region: str) -> list[DeployedWorker]:
        return [w for (r, _), w in sorted(self.workers.items()) if r == region]

    async def delete_worker(self, region: str, name: str) -> None:
        if name in self.delete_errors:
            raise self.delete_errors[name]
        if (region, name) not in self.workers:
            raise NotFoundError(f"worker {name} in {region}")
        del self.workers[(region, name)]

    async def invoke(self, worker, request, timeout_s):
        return ChunkInvocationResponse(success=True, output_ref=request.output_key)


@pytest.fixture
def fake_platform() -> FakePlatform:
    return FakePlatform()


class ScriptedInvoker:
    """Chunk invoker whose per-chunk outcomes are scripted.

    ``script`` maps a chunk index to a list of outcomes consumed one per
    attempt: ``"ok"``, ``"fail"``, ``"hang"``, ``"write_then_hang"`` or an
    exception instance to raise. Unscripted attempts succeed.
    """

    def __init__(self, script: dict[int, list[Any]] | None = None, delay: float = 0.0, store=None) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.store = store
        self.calls: list[ChunkInvocationRequest] = []
        self.running = 0
        self.peak_running = 0
        self.start_order: list[int] = []

    def attempts_for(self, chunk_index: int) -> int:
        return sum(1 for c in self.calls if c.chunk_index == chunk_index)

    async def invoke(self, worker, request: ChunkInvocationRequest, timeout_s: float) -> ChunkInvocationResponse:
        self.calls.append(request)
        self.start_order.append(request.chunk_index)
        self.running += 1
        self.peak_running = max(self.peak_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            steps = self.script.get(request.chunk_index)
            outcome = steps.pop(0) if steps else "ok"
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome == "fail":
                return ChunkInvocationResponse(success=False, error_detail="renderer crashed")
            if outcome == "write_then_hang":
                self.store.existing.add(request.output_key)
                await asyncio.sleep(3600)
            if outcome == "hang":
                await asyncio.sleep(3600)
            return ChunkInvocationResponse(success=True, output_ref=request.output_key)
        finally:
            self.running -= 1


class FakeOutputStore:
    def __init__(self) -> None:
        self.existing: set[str] = set()
        self.lookups: list[str] = []

    def object_exists(self, path: str, *, region: str | None = None) -> bool:
        self.lookups.append(path)
        return path in self.existing


class FakeStitcher:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple[list[str], str]] = []

    async def stitch(self, chunk_refs: list[str], output_key: str, *, region: str | None = None) -> str:
        self.calls.append((list(chunk_refs), output_key))
        if self.fail:
            raise StitchFailedError("muxer rejected chunk 2")
        return output_key


@pytest.fixture
def output_store() -> FakeOutputStore:
    return FakeOutputStore()


@pytest.fixture
def stitcher() -> FakeStitcher:
    return FakeStitcher()


@pytest_asyncio.fixture
async def job_store(settings):
    """Job store on a throwaway SQLite database."""
    engine = create_engine_for(settings.database_url)
    await init_db(engine, max_retries=1)
    yield RenderJobStore(create_session_maker(engine))
    await engine.dispose()
