from renderfleet.render.chunk_table import ChunkState, ChunkTable, JobState
from renderfleet.render.chunking import ChunkRange, split_job
from renderfleet.render.orchestrator import RenderJob, RenderOrchestrator, RenderResult
from renderfleet.render.stitcher import FFmpegConcatStitcher, Stitcher
from renderfleet.render.worker_pool import WorkerPool

__all__ = [
    "ChunkRange",
    "ChunkState",
    "ChunkTable",
    "FFmpegConcatStitcher",
    "JobState",
    "RenderJob",
    "RenderOrchestrator",
    "RenderResult",
    "Stitcher",
    "WorkerPool",
    "split_job",
]
