"""
Usage Tracker

Applies retrieval usage write-backs (usage_count + 1, last_accessed = now)
in the background through a bounded queue served by a fixed worker pool.

Submission never awaits: a full queue drops the job with a warning.
Failed writes are logged and counted, never retried or raised.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from ..common.primary_store import PrimaryStore
from ..common.schemas import utcnow

logger = logging.getLogger("context_engine.retriever.usage_tracker")


class UsageTracker:
    """
    Bounded fire-and-forget usage writer.

    Workers are started lazily on the first submission, inside the running
    event loop. Call `close()` on shutdown to drain the queue.
    """

    def __init__(
        self,
        primary_store: PrimaryStore,
        workers: int = 4,
        queue_size: int = 1000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._primary = primary_store
        self._worker_count = workers
        self._queue_size = queue_size
        self._clock = clock
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self.applied = 0
        self.dropped = 0
        self.failed = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def _ensure_started(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self._queue_size)
        if not self._workers:
            self._workers = [
                asyncio.create_task(self._worker(n), name=f"usage-tracker-{n}")
                for n in range(self._worker_count)
            ]
        return self._queue

    def submit(self, context_ids: Iterable[str]) -> int:
        """
        Queue usage writes for the given context ids.

        Must be called from within the event loop. Never blocks.

        Returns:
            Number of ids accepted (the rest were dropped)
        """
        queue = self._ensure_started()
        accessed_at = self._clock()
        accepted = 0
        for context_id in context_ids:
            try:
                queue.put_nowait((context_id, accessed_at))
            except asyncio.QueueFull:
                self.dropped += 1
                logger.warning("Usage queue full, dropping usage write for context_id=%s", context_id)
            else:
                accepted += 1
        return accepted

    async def _worker(self, n: int) -> None:
        queue = self._queue
        while True:
            job: Tuple[str, datetime] = await queue.get()
            context_id, accessed_at = job
            try:
                if await self._primary.record_access(context_id, accessed_at):
                    self.applied += 1
                else:
                    logger.debug("Usage write skipped, context_id=%s no longer exists", context_id)
            except Exception as e:
                self.failed += 1
                logger.warning("Usage write failed for context_id=%s: %s", context_id, e)
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued write has been processed"""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        """Drain the queue, then stop the workers"""
        if not self._workers:
            return
        await self.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.debug(
            "Usage tracker closed (applied=%d, dropped=%d, failed=%d)",
            self.applied, self.dropped, self.failed,
        )
