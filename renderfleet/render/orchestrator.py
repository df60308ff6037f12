"""Fan-out render orchestrator.

Splits a job into chunks, dispatches them to a deployed worker through a
bounded pool, retries failed chunks, and stitches the outputs in index
order. A single collect loop owns the chunk table; invocations only return
outcomes to it.
"""

import asyncio
import logging
import math
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from renderfleet.exceptions import (
    InvocationFailedError,
    InvocationTimeoutError,
    RenderCancelledError,
    RenderfleetError,
    RenderTimeoutError,
    StitchFailedError,
)
from renderfleet.render.chunk_table import ChunkRecord, ChunkTable, JobState
from renderfleet.render.chunking import ChunkRange, split_job
from renderfleet.render.stitcher import Stitcher
from renderfleet.render.worker_pool import WorkerPool
from renderfleet.schemas.render import ChunkInvocationRequest, ChunkInvocationResponse
from renderfleet.schemas.worker import DeployedWorker
from renderfleet.services.naming import chunk_output_key, final_output_key
from renderfleet.services.progress import JobProgress, compute_progress

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[JobProgress], Awaitable[None] | None]
LogUrlBuilder = Callable[[DeployedWorker, str], str]


class ChunkInvoker(Protocol):
    async def invoke(
        self, worker: DeployedWorker, request: ChunkInvocationRequest, timeout_s: float
    ) -> ChunkInvocationResponse: ...


class OutputStore(Protocol):
    def object_exists(self, path: str, *, region: str | None = None) -> bool: ...


@dataclass
class RenderJob:
    job_id: str
    site_ref: str
    worker: DeployedWorker
    composition: str
    duration_ms: int
    fps: int = 30
    region: str | None = None
    input_props: dict[str, Any] = field(default_factory=dict)
    output_extension: str = "mp4"
    chunk_duration_ms: int = 20_000
    concurrency_ceiling: int = 1000
    requested_parallelism: int = 100
    max_attempts: int = 3
    retry_backoff_s: float = 1.0
    retry_backoff_max_s: float = 8.0
    invocation_timeout_s: float = 300.0
    job_timeout_s: float = 3600.0

    @property
    def parallelism(self) -> int:
        return max(1, min(self.concurrency_ceiling, self.requested_parallelism))

    def retry_delay(self, attempt: int) -> float:
        """Backoff before ``attempt`` (the first attempt never waits)."""
        if attempt <= 1:
            return 0.0
        return min(self.retry_backoff_s * 2 ** (attempt - 2), self.retry_backoff_max_s)


@dataclass
class RenderResult:
    job_id: str
    state: JobState
    progress: JobProgress
    output_ref: str | None = None
    error: RenderfleetError | None = None
    unresolved_chunks: list[int] = field(default_factory=list)
    chunk_outputs: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "state": self.state.value,
            "output_ref": self.output_ref,
            "error": self.error.to_error_info().model_dump(mode="json") if self.error else None,
            "unresolved_chunks": self.unresolved_chunks,
            "progress": self.progress.to_dict(),
        }


class RenderOrchestrator:
    """Runs one render job at a time; create one per job."""

    def __init__(
        self,
        invoker: ChunkInvoker,
        store: OutputStore,
        stitcher: Stitcher,
        *,
        on_progress: ProgressCallback | None = None,
        log_url_builder: LogUrlBuilder | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.invoker = invoker
        self.store = store
        self.stitcher = stitcher
        self._on_progress = on_progress
        self._log_url_builder = log_url_builder
        self._sleep = sleep
        self._cancelled = False
        self._pool: WorkerPool | None = None
        self.state = JobState.SPLITTING
        self.peak_concurrency = 0

    def cancel(self) -> None:
        """Stop dispatching; in-flight chunks finish and the job fails."""
        self._cancelled = True
        if self._pool is not None:
            self._pool.wake()

    async def run(self, job: RenderJob) -> RenderResult:
        self.state = JobState.SPLITTING
        chunks = split_job(
            job.duration_ms, job.chunk_duration_ms, job.concurrency_ceiling, min_chunk_ms=math.ceil(1000 / job.fps)
        )
        table = ChunkTable(chunks, job.max_attempts)
        logger.info(
            f"[RENDER] Job {job.job_id}: {len(chunks)} chunks on {job.worker.name} "
            f"(parallelism={job.parallelism})"
        )

        if not chunks:
            self.state = JobState.COMPLETED
            await self._emit(job, table)
            return self._result(job, table)

        error = await self._dispatch(job, table)

        output_ref = None
        if error is None and table.is_complete:
            self.state = JobState.STITCHING
            await self._emit(job, table)
            output_ref, error = await self._stitch(job, table)

        if error is None:
            self.state = JobState.COMPLETED
            logger.info(f"[RENDER] Job {job.job_id} completed: {output_ref}")
        else:
            self.state = JobState.FAILED
            error.details.setdefault("unresolved_chunks", table.unresolved())
            logger.error(f"[RENDER] Job {job.job_id} failed: [{error.code}] {error.message}")
        await self._emit(job, table)
        return self._result(job, table, output_ref=output_ref, error=error)

    def _result(
        self,
        job: RenderJob,
        table: ChunkTable,
        *,
        output_ref: str | None = None,
        error: RenderfleetError | None = None,
    ) -> RenderResult:
        return RenderResult(
            job_id=job.job_id,
            state=self.state,
            progress=compute_progress(table, job_id=job.job_id, stage=self.state),
            output_ref=output_ref,
            error=error,
            unresolved_chunks=table.unresolved(),
            chunk_outputs=[r.output_ref for r in table if r.output_ref],
        )

    async def _emit(self, job: RenderJob, table: ChunkTable) -> None:
        if self._on_progress is None:
            return
        try:
            result = self._on_progress(compute_progress(table, job_id=job.job_id, stage=self.state))
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.warning(f"[RENDER] Job {job.job_id}: progress callback failed: {e}")

    def _stop_reason(self, job: RenderJob, table: ChunkTable, deadline: float) -> RenderfleetError | None:
        if table.is_complete:
            return None
        if self._cancelled:
            return RenderCancelledError(f"Render {job.job_id} was cancelled")
        if table.first_fatal is not None:
            return table.first_fatal.error
        if asyncio.get_running_loop().time() >= deadline:
            return RenderTimeoutError(
                f"Render {job.job_id} exceeded its {job.job_timeout_s:.0f}s deadline",
                job_id=job.job_id,
            )
        return None

    async def _dispatch(self, job: RenderJob, table: ChunkTable) -> RenderfleetError | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + job.job_timeout_s
        pool = WorkerPool(job.parallelism)
        self._pool = pool
        pending = deque(record.index for record in table)
        stop_error: RenderfleetError | None = None
        self.state = JobState.DISPATCHING

        try:
            while True:
                if stop_error is None:
                    stop_error = self._stop_reason(job, table, deadline)
                    if stop_error is not None:
                        logger.warning(
                            f"[RENDER] Job {job.job_id}: no new dispatches ({stop_error.code}); "
                            f"waiting for {pool.in_flight} in-flight chunks"
                        )

                if stop_error is None and pending and pool.has_free_slot:
                    while pending and pool.has_free_slot:
                        await self._submit(job, table, pool, pending.popleft())
                    if not pending:
                        self.state = JobState.COLLECTING
                    await self._emit(job, table)

                if pool.in_flight == 0:
                    break

                timeout = None if stop_error is not None else max(0.0, deadline - loop.time())
                outcome = await pool.next_completed(timeout)
                if outcome is None:
                    continue
                index, response, exc = outcome
                await self._collect(job, table, pending, index, response, exc, stopping=stop_error is not None)
                await self._emit(job, table)
        finally:
            if pool.in_flight:
                logger.warning(f"[RENDER] Job {job.job_id}: abandoning {pool.in_flight} in-flight chunks")
                await pool.join(cancel=True)
            self._pool = None
            self.peak_concurrency = max(self.peak_concurrency, pool.peak_running)

        if table.is_complete:
            return None
        if table.first_fatal is not None:
            return table.first_fatal.error
        return stop_error

    async def _submit(self, job: RenderJob, table: ChunkTable, pool: WorkerPool, index: int) -> None:
        previous_error = table[index].error
        record = table.mark_in_flight(index)
        check_existing = isinstance(previous_error, InvocationTimeoutError)

        async def attempt() -> ChunkInvocationResponse:
            return await self._invoke_chunk(job, record.chunk, record.attempts, check_existing)

        await pool.submit(index, attempt)

    async def _invoke_chunk(
        self,
        job: RenderJob,
        chunk: ChunkRange,
        attempt: int,
        check_existing: bool,
    ) -> ChunkInvocationResponse:
        delay = job.retry_delay(attempt)
        if delay:
            await self._sleep(delay)

        output_key = chunk_output_key(
            job.job_id,
            chunk_index=chunk.index,
            start_ms=chunk.start_ms,
            end_ms=chunk.end_ms,
            site_ref=job.site_ref,
            composition=job.composition,
            input_props=job.input_props,
            extension=job.output_extension,
        )

        # A timed-out invocation may still have finished remotely
        if check_existing and await asyncio.to_thread(self.store.object_exists, output_key, region=job.region):
            logger.info(f"[RENDER] Chunk {chunk.index} output already present, skipping re-invoke")
            return ChunkInvocationResponse(success=True, output_ref=output_key)

        request = ChunkInvocationRequest(
            job_id=job.job_id,
            chunk_index=chunk.index,
            start_ms=chunk.start_ms,
            end_ms=chunk.end_ms,
            fps=job.fps,
            site_ref=job.site_ref,
            worker_name=job.worker.name,
            composition=job.composition,
            output_key=output_key,
            attempt=attempt,
            input_props=job.input_props,
        )
        try:
            return await asyncio.wait_for(
                self.invoker.invoke(job.worker, request, job.invocation_timeout_s),
                timeout=job.invocation_timeout_s,
            )
        except TimeoutError as e:
            raise InvocationTimeoutError(
                f"Chunk {chunk.index} timed out after {job.invocation_timeout_s:.0f}s",
                chunk_index=chunk.index,
                job_id=job.job_id,
            ) from e

    def _chunk_error(
        self,
        job: RenderJob,
        index: int,
        response: ChunkInvocationResponse | None,
        exc: BaseException | None,
    ) -> RenderfleetError:
        if isinstance(exc, RenderfleetError):
            error = exc
        elif exc is not None:
            error = InvocationFailedError(f"Chunk {index} failed: {exc}", chunk_index=index, job_id=job.job_id)
        elif response is not None and response.success:
            error = InvocationFailedError(
                f"Chunk {index} reported success without an output",
                chunk_index=index,
                job_id=job.job_id,
                details={"transient": False},
            )
        else:
            detail = response.error_detail if response else None
            error = InvocationFailedError(
                f"Chunk {index} failed: {detail or 'worker reported failure'}",
                chunk_index=index,
                job_id=job.job_id,
            )
        if self._log_url_builder is not None:
            error.details.setdefault("log_url", self._log_url_builder(job.worker, job.job_id))
        return error

    async def _collect(
        self,
        job: RenderJob,
        table: ChunkTable,
        pending: deque[int],
        index: int,
        response: ChunkInvocationResponse | None,
        exc: BaseException | None,
        *,
        stopping: bool,
    ) -> None:
        if exc is None and response is not None and response.success and response.output_ref:
            table.mark_done(index, response.output_ref)
            return

        error = self._chunk_error(job, index, response, exc)
        record: ChunkRecord = table[index]
        retryable = error.details.get("transient", isinstance(error, InvocationFailedError) or error.retryable)
        terminal = table.mark_failed(index, error, retryable=retryable)
        if terminal:
            logger.error(
                f"[RENDER] Job {job.job_id}: chunk {index} failed terminally "
                f"after {record.attempts} attempt(s): {error.message}"
            )
            return
        if stopping:
            return

        logger.warning(
            f"[RENDER] Job {job.job_id}: chunk {index} attempt {record.attempts}/{table.max_attempts} "
            f"failed ({error.code}); retrying in {job.retry_delay(record.attempts + 1):.1f} seconds..."
        )
        table.mark_pending(index)
        pending.appendleft(index)

    async def _stitch(self, job: RenderJob, table: ChunkTable) -> tuple[str | None, RenderfleetError | None]:
        refs = table.outputs_in_order()
        if len(refs) == 1:
            return refs[0], None
        try:
            output_ref = await self.stitcher.stitch(
                refs, final_output_key(job.job_id, job.output_extension), region=job.region
            )
        except StitchFailedError as e:
            return None, e
        except RenderfleetError as e:
            return None, StitchFailedError(f"Stitching failed: {e.message}", details={"cause": e.code})
        return output_ref, None
