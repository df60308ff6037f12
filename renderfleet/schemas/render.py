from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RenderRequest(BaseModel):
    site: str  # Site id or a full serve URL
    composition: str
    duration_ms: int = Field(ge=0)
    fps: int = Field(default=30, gt=0)
    region: str | None = None
    job_id: str | None = None
    input_props: dict[str, Any] = Field(default_factory=dict)
    output_extension: str | None = None

    # Worker identity overrides (settings provide the defaults)
    version: str | None = None
    memory: str | None = None
    cpu: str | None = None
    timeout_seconds: int | None = None

    # Scheduling overrides
    chunk_duration_s: int | None = Field(default=None, gt=0)
    concurrency_ceiling: int | None = Field(default=None, gt=0)
    requested_parallelism: int | None = Field(default=None, gt=0)
    max_attempts: int | None = Field(default=None, gt=0)
    job_timeout_s: int | None = Field(default=None, gt=0)

    webhook_url: str | None = None
    webhook_data: dict[str, Any] | None = None


class ChunkInvocationRequest(BaseModel):
    """Payload sent to a worker for one chunk."""

    job_id: str
    chunk_index: int
    start_ms: int
    end_ms: int
    fps: int = 30
    site_ref: str
    worker_name: str
    composition: str
    output_key: str
    attempt: int = 1
    input_props: dict[str, Any] = Field(default_factory=dict)


class ChunkInvocationResponse(BaseModel):
    success: bool
    output_ref: str | None = None
    error_detail: str | None = None
    duration_ms: int | None = None


class RenderJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    site_ref: str
    worker_name: str
    region: str
    status: str
    stage: str | None
    progress: float
    total_chunks: int
    chunks_done: int
    chunks_failed: int
    output_key: str | None
    output_url: str | None
    error_code: str | None
    error_message: str | None
    unresolved_chunks: list[int] | None
    webhook_delivered: bool | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class WebhookPayload(BaseModel):
    job_id: str
    state: str  # "completed" | "failed"
    output_ref: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    unresolved_chunks: list[int] = Field(default_factory=list)
    custom_data: dict[str, Any] | None = None
    signature: str | None = None
