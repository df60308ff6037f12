"""Progress snapshots derived from a chunk table."""

from dataclasses import asdict, dataclass
from typing import Any

from renderfleet.render.chunk_table import ChunkState, ChunkTable, JobState


@dataclass(frozen=True)
class JobProgress:
    job_id: str
    stage: str
    total_chunks: int
    pending: int
    in_flight: int
    done: int
    failed: int
    percent: float
    fatal_chunk: int | None = None
    fatal_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compute_progress(table: ChunkTable, *, job_id: str, stage: JobState | str) -> JobProgress:
    """Snapshot the table. Pure: reads counters, never mutates."""
    total = len(table)
    done = table.count(ChunkState.DONE)
    percent = 100.0 if total == 0 else round(done * 100 / total, 2)
    fatal = table.first_fatal
    return JobProgress(
        job_id=job_id,
        stage=stage.value if isinstance(stage, JobState) else stage,
        total_chunks=total,
        pending=table.count(ChunkState.PENDING),
        in_flight=table.count(ChunkState.IN_FLIGHT),
        done=done,
        failed=table.count(ChunkState.FAILED),
        percent=percent,
        fatal_chunk=fatal.index if fatal else None,
        fatal_error=fatal.error.message if fatal and fatal.error else None,
    )
