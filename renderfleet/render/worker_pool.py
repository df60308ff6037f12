"""Fixed-size pool for chunk invocations.

A semaphore bounds how many invocations run at once; finished invocations
are handed back through a queue so that only the caller's collect loop
touches shared state.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any

logger = logging.getLogger(__name__)

Outcome = tuple[Hashable, Any, BaseException | None]


class WorkerPool:
    def __init__(self, size: int) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.size = size
        self._slots = asyncio.Semaphore(size)
        self._completed: asyncio.Queue[Outcome | None] = asyncio.Queue()
        self._tasks: dict[Hashable, asyncio.Task] = {}
        self._running = 0
        self.peak_running = 0

    @property
    def in_flight(self) -> int:
        """Submitted items whose outcome has not been collected yet."""
        return len(self._tasks)

    @property
    def has_free_slot(self) -> bool:
        return not self._slots.locked()

    async def submit(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> None:
        """Start ``factory()`` once a slot is free. Waits while the pool is full."""
        if key in self._tasks:
            raise ValueError(f"{key!r} is already in flight")
        await self._slots.acquire()
        self._tasks[key] = asyncio.create_task(self._run(key, factory))

    async def _run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> None:
        self._running += 1
        self.peak_running = max(self.peak_running, self._running)
        try:
            outcome: Outcome = (key, await factory(), None)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            outcome = (key, None, e)
        finally:
            self._running -= 1
            self._slots.release()
        self._completed.put_nowait(outcome)

    async def next_completed(self, timeout: float | None = None) -> Outcome | None:
        """Next finished item as ``(key, result, exception)``.

        Returns None on timeout or when ``wake()`` was called.
        """
        try:
            outcome = self._completed.get_nowait()
        except asyncio.QueueEmpty:
            if timeout is not None and timeout <= 0:
                return None
            try:
                outcome = await asyncio.wait_for(self._completed.get(), timeout)
            except TimeoutError:
                return None
        if outcome is None:
            return None
        self._tasks.pop(outcome[0], None)
        return outcome

    def wake(self) -> None:
        """Release a caller blocked in ``next_completed``."""
        self._completed.put_nowait(None)

    async def join(self, *, cancel: bool = False) -> None:
        """Wait for every running item without collecting outcomes.

        With ``cancel`` the items are cancelled first; their outcomes are dropped.
        """
        tasks = list(self._tasks.values())
        if cancel:
            for task in tasks:
                task.cancel()
            self._tasks.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
