"""Per-chunk state for one render job.

The table is the source of truth for progress: the dispatch loop only reads
it to decide what to send next. Running counts are maintained on every
transition so aggregates never need a full rescan.
"""

from collections import Counter
from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Any

from renderfleet.exceptions import RenderfleetError
from renderfleet.render.chunking import ChunkRange


class ChunkState(Enum):
    """Chunk lifecycle state."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


class JobState(Enum):
    """Render job lifecycle state."""

    SPLITTING = "splitting"
    DISPATCHING = "dispatching"
    COLLECTING = "collecting"
    STITCHING = "stitching"
    COMPLETED = "completed"
    FAILED = "failed"


class InvalidTransitionError(RuntimeError):
    """A chunk was moved along an edge the state machine does not have."""


@dataclass
class ChunkRecord:
    chunk: ChunkRange
    state: ChunkState = ChunkState.PENDING
    attempts: int = 0
    output_ref: str | None = None
    error: RenderfleetError | None = None
    terminal: bool = False

    @property
    def index(self) -> int:
        return self.chunk.index

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.chunk.index,
            "start_ms": self.chunk.start_ms,
            "end_ms": self.chunk.end_ms,
            "state": self.state.value,
            "attempts": self.attempts,
            "output_ref": self.output_ref,
            "error": self.error.message if self.error else None,
            "terminal": self.terminal,
        }


class ChunkTable:
    def __init__(self, chunks: list[ChunkRange], max_attempts: int) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self._records = {chunk.index: ChunkRecord(chunk=chunk) for chunk in chunks}
        self._counts: Counter[ChunkState] = Counter({ChunkState.PENDING: len(self._records)})
        self.first_fatal: ChunkRecord | None = None

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[ChunkRecord]:
        return iter(sorted(self._records.values(), key=lambda r: r.index))

    def __getitem__(self, index: int) -> ChunkRecord:
        return self._records[index]

    def count(self, state: ChunkState) -> int:
        return self._counts[state]

    @property
    def is_complete(self) -> bool:
        return self._counts[ChunkState.DONE] == len(self._records)

    def _move(self, record: ChunkRecord, expected: ChunkState, new_state: ChunkState) -> None:
        if record.state is not expected:
            raise InvalidTransitionError(
                f"Chunk {record.index}: {record.state.value} -> {new_state.value} is not allowed"
            )
        self._counts[record.state] -= 1
        self._counts[new_state] += 1
        record.state = new_state

    def mark_in_flight(self, index: int) -> ChunkRecord:
        record = self._records[index]
        self._move(record, ChunkState.PENDING, ChunkState.IN_FLIGHT)
        record.attempts += 1
        return record

    def mark_done(self, index: int, output_ref: str) -> ChunkRecord:
        record = self._records[index]
        self._move(record, ChunkState.IN_FLIGHT, ChunkState.DONE)
        record.output_ref = output_ref
        record.error = None
        return record

    def mark_failed(self, index: int, error: RenderfleetError, *, retryable: bool = True) -> bool:
        """Record a failed attempt. Returns True when the failure is terminal."""
        record = self._records[index]
        self._move(record, ChunkState.IN_FLIGHT, ChunkState.FAILED)
        record.error = error
        record.terminal = not retryable or record.attempts >= self.max_attempts
        if record.terminal and self.first_fatal is None:
            self.first_fatal = record
        return record.terminal

    def mark_pending(self, index: int) -> ChunkRecord:
        """Put a non-terminal failed chunk back in line for a retry."""
        record = self._records[index]
        if record.terminal:
            raise InvalidTransitionError(f"Chunk {index} failed terminally and cannot be retried")
        self._move(record, ChunkState.FAILED, ChunkState.PENDING)
        return record

    def unresolved(self) -> list[int]:
        return [r.index for r in self if r.state is not ChunkState.DONE]

    def outputs_in_order(self) -> list[str]:
        """Chunk outputs sorted by chunk index; only valid once every chunk is done."""
        if not self.is_complete:
            raise InvalidTransitionError("Not every chunk is done")
        return [r.output_ref for r in self]
