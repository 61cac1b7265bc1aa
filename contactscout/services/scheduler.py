"""Priority admission queue with a global concurrency cap."""
from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Awaitable, Callable

from loguru import logger

from contactscout.models.search import Priority

SearchRunner = Callable[[], Awaitable[None]]


class SchedulerClosed(RuntimeError):
    pass


class SearchScheduler:
    """Admits queued searches in (priority, submission order).

    ``_lock`` guards the heap, the pending map and the active map. Every
    admission happens under it, so no more than ``max_concurrent`` tasks
    ever run at once.
    """

    def __init__(self, max_concurrent: int = 50):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._lock = asyncio.Lock()
        self._heap: list[tuple[int, int, str]] = []
        self._pending: dict[str, SearchRunner] = {}
        self._active: dict[str, asyncio.Task[None]] = {}
        self._counter = itertools.count()
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def queue_size(self) -> int:
        return len(self._pending)

    def is_queued(self, search_id: str) -> bool:
        return search_id in self._pending

    def is_active(self, search_id: str) -> bool:
        return search_id in self._active

    def owns(self, search_id: str) -> bool:
        return search_id in self._pending or search_id in self._active

    async def enqueue(self, search_id: str, priority: Priority, runner: SearchRunner) -> None:
        async with self._lock:
            if self._closed:
                raise SchedulerClosed("Scheduler is shut down")
            if search_id in self._pending or search_id in self._active:
                raise ValueError(f"Search {search_id} is already scheduled")
            self._pending[search_id] = runner
            heapq.heappush(self._heap, (priority.rank, next(self._counter), search_id))
            self._admit_locked()

    async def withdraw(self, search_id: str) -> bool:
        """Drop a search that has not been admitted yet."""
        async with self._lock:
            # Heap entries of withdrawn ids are skipped at admission.
            return self._pending.pop(search_id, None) is not None

    def _admit_locked(self) -> None:
        while self._heap and len(self._active) < self.max_concurrent and not self._closed:
            _, _, search_id = heapq.heappop(self._heap)
            runner = self._pending.pop(search_id, None)
            if runner is None:
                continue
            self._active[search_id] = asyncio.create_task(
                self._run(search_id, runner), name=f"search-{search_id}"
            )
            logger.debug(
                f"Admitted search {search_id} "
                f"(active={len(self._active)}, queued={len(self._pending)})"
            )

    async def _run(self, search_id: str, runner: SearchRunner) -> None:
        try:
            await runner()
        except asyncio.CancelledError:
            logger.info(f"Search task {search_id} cancelled")
            raise
        except Exception:
            logger.exception(f"Search task {search_id} crashed")
        finally:
            async with self._lock:
                self._active.pop(search_id, None)
                self._admit_locked()

    async def join(self) -> None:
        """Wait until nothing is queued or running."""
        while True:
            tasks = list(self._active.values())
            if not tasks:
                if not self._pending:
                    return
                await asyncio.sleep(0)
                continue
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> list[str]:
        """Cancel running tasks and return the ids of searches that never started."""
        async with self._lock:
            self._closed = True
            withdrawn = list(self._pending)
            self._pending.clear()
            self._heap.clear()
            tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(
            f"Scheduler shut down, cancelled {len(tasks)} running and {len(withdrawn)} queued searches"
        )
        return withdrawn
