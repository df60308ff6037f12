"""Split a render job's duration into time-range chunks."""

import math
from dataclasses import dataclass

from renderfleet.exceptions import InvalidConfigError


@dataclass(frozen=True)
class ChunkRange:
    """One chunk's half-open time range ``[start_ms, end_ms)``."""

    index: int
    start_ms: int
    end_ms: int

    @property
    def duration_ms(self) -> int:
        return self.end_ms - self.start_ms

    def frame_range(self, fps: int) -> tuple[int, int]:
        """Inclusive frame range; adjacent chunks of at least one frame never share a frame."""
        start = round(self.start_ms * fps / 1000)
        end = max(start, round(self.end_ms * fps / 1000) - 1)
        return start, end


def effective_chunk_duration_ms(duration_ms: int, chunk_duration_ms: int, ceiling: int) -> int:
    """Grow the chunk size until the chunk count fits under the ceiling."""
    if math.ceil(duration_ms / chunk_duration_ms) > ceiling:
        return math.ceil(duration_ms / ceiling)
    return chunk_duration_ms


def split_job(duration_ms: int, chunk_duration_ms: int, ceiling: int, min_chunk_ms: int = 1) -> list[ChunkRange]:
    """Partition ``[0, duration_ms)`` into contiguous chunks.

    Every chunk but the last has the (possibly grown) chunk duration; the
    last one takes the remainder. The chunk count never exceeds ``ceiling``.
    A remainder shorter than ``min_chunk_ms`` (one frame, for the caller) is
    folded into the previous chunk.

    Raises:
        InvalidConfigError: negative duration, or non-positive chunk size/ceiling
    """
    if duration_ms < 0:
        raise InvalidConfigError(field="duration_ms", value=duration_ms)
    if chunk_duration_ms <= 0:
        raise InvalidConfigError(field="chunk_duration_ms", value=chunk_duration_ms)
    if ceiling <= 0:
        raise InvalidConfigError(field="concurrency_ceiling", value=ceiling)
    if duration_ms == 0:
        return []

    size = max(effective_chunk_duration_ms(duration_ms, chunk_duration_ms, ceiling), min_chunk_ms)
    chunks = []
    start = 0
    while start < duration_ms:
        end = min(start + size, duration_ms)
        chunks.append(ChunkRange(index=len(chunks), start_ms=start, end_ms=end))
        start = end

    if len(chunks) > 1 and chunks[-1].duration_ms < min_chunk_ms:
        tail = chunks.pop()
        chunks[-1] = ChunkRange(index=tail.index - 1, start_ms=chunks[-1].start_ms, end_ms=tail.end_ms)
    return chunks
