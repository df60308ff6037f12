from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from renderfleet.models.base import Base, TimestampMixin


class RenderJobRecord(Base, TimestampMixin):
    __tablename__ = "render_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    site_ref: Mapped[str] = mapped_column(Text, nullable=False)
    composition: Mapped[str] = mapped_column(String(255), nullable=False)
    worker_name: Mapped[str] = mapped_column(String(255), nullable=False)
    region: Mapped[str] = mapped_column(String(50), nullable=False)

    # Status: splitting, dispatching, collecting, stitching, completed, failed
    status: Mapped[str] = mapped_column(String(50), default="splitting", index=True)
    stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    progress: Mapped[float] = mapped_column(Float, default=0.0)

    # Chunk counters
    total_chunks: Mapped[int] = mapped_column(Integer, default=0)
    chunks_done: Mapped[int] = mapped_column(Integer, default=0)
    chunks_failed: Mapped[int] = mapped_column(Integer, default=0)

    # Output
    output_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    output_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Error handling
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    unresolved_chunks: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)

    # Webhook
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_delivered: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    def __repr__(self) -> str:
        return f"<RenderJobRecord {self.id} ({self.status})>"
