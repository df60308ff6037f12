"""Persistence of render job records."""

from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from renderfleet.exceptions import NotFoundError, RenderfleetError
from renderfleet.models.render_job import RenderJobRecord
from renderfleet.render.orchestrator import RenderResult
from renderfleet.services.progress import JobProgress


class RenderJobStore:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self.session_maker = session_maker

    async def create(
        self,
        *,
        job_id: str,
        site_ref: str,
        composition: str,
        worker_name: str,
        region: str,
        webhook_url: str | None = None,
    ) -> RenderJobRecord:
        record = RenderJobRecord(
            id=job_id,
            site_ref=site_ref,
            composition=composition,
            worker_name=worker_name,
            region=region,
            status="splitting",
            stage="splitting",
            progress=0.0,
            webhook_url=webhook_url,
            started_at=datetime.now(UTC),
        )
        async with self.session_maker() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)
        return record

    async def get(self, job_id: str) -> RenderJobRecord:
        async with self.session_maker() as session:
            record = await session.get(RenderJobRecord, job_id)
        if record is None:
            raise NotFoundError(f"render job {job_id}")
        return record

    async def list_recent(self, limit: int = 20) -> list[RenderJobRecord]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(RenderJobRecord).order_by(RenderJobRecord.created_at.desc()).limit(limit)
            )
            return list(result.scalars().all())

    async def update_progress(self, progress: JobProgress) -> None:
        async with self.session_maker() as session:
            record = await session.get(RenderJobRecord, progress.job_id)
            if record is None:
                raise NotFoundError(f"render job {progress.job_id}")
            record.status = progress.stage
            record.stage = progress.stage
            record.progress = progress.percent
            record.total_chunks = progress.total_chunks
            record.chunks_done = progress.done
            record.chunks_failed = progress.failed
            await session.commit()

    async def finish(
        self,
        result: RenderResult,
        *,
        output_url: str | None = None,
        webhook_delivered: bool | None = None,
    ) -> RenderJobRecord:
        async with self.session_maker() as session:
            record = await session.get(RenderJobRecord, result.job_id)
            if record is None:
                raise NotFoundError(f"render job {result.job_id}")
            record.status = result.state.value
            record.stage = result.state.value
            record.progress = result.progress.percent
            record.total_chunks = result.progress.total_chunks
            record.chunks_done = result.progress.done
            record.chunks_failed = result.progress.failed
            record.output_key = result.output_ref
            record.output_url = output_url
            record.error_code = result.error.code if result.error else None
            record.error_message = result.error.message if result.error else None
            record.unresolved_chunks = result.unresolved_chunks or None
            record.webhook_delivered = webhook_delivered
            record.completed_at = datetime.now(UTC)
            await session.commit()
            await session.refresh(record)
        return record

    async def fail(self, job_id: str, error: RenderfleetError) -> None:
        """Mark a job failed when the orchestrator itself raised."""
        async with self.session_maker() as session:
            record = await session.get(RenderJobRecord, job_id)
            if record is None:
                raise NotFoundError(f"render job {job_id}")
            record.status = "failed"
            record.stage = "failed"
            record.error_code = error.code
            record.error_message = error.message
            record.completed_at = datetime.now(UTC)
            await session.commit()
