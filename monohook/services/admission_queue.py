"""
Bounded admission queue between the HTTP handler and the worker scheduler.
"""
from __future__ import annotations

import asyncio
import collections
import logging
from typing import Deque, Optional

from monohook.services.jobs import Job

logger = logging.getLogger(__name__)


class AdmissionQueue:
    """FIFO of accepted jobs. ``capacity == 0`` means unbounded.

    Enqueueing never waits: it either appends or refuses on the spot. The
    capacity check and the append run without yielding to the event loop, so
    concurrent handlers cannot push past the limit.

    The queue holds no reference to an event loop until its single consumer
    waits in ``dequeue``, so it can be built before the server's loop exists.
    """

    def __init__(self, capacity: int = 0) -> None:
        if capacity < 0:
            raise ValueError("queue capacity must be >= 0")
        self._capacity = capacity
        self._items: Deque[Job] = collections.deque()
        self._waiter: Optional[asyncio.Future] = None
        self._closed = False

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def full(self) -> bool:
        return bool(self._capacity) and len(self._items) >= self._capacity

    def try_enqueue(self, job: Job) -> bool:
        if self._closed:
            return False
        if self.full():
            logger.warning(
                "Admission queue full, refusing job %d | capacity=%d",
                job.job_id,
                self._capacity,
            )
            return False
        self._items.append(job)
        if self._waiter is not None and not self._waiter.done():
            self._waiter.set_result(None)
        logger.debug("Job %d queued | pending=%d", job.job_id, len(self))
        return True

    async def dequeue(self) -> Job:
        """Wait for the oldest job. Only one consumer may wait at a time."""
        while not self._items:
            self._waiter = asyncio.get_running_loop().create_future()
            try:
                await self._waiter
            finally:
                self._waiter = None
        return self._items.popleft()

    def try_dequeue(self) -> Optional[Job]:
        if not self._items:
            return None
        return self._items.popleft()

    def close(self) -> None:
        """Refuse every later enqueue; queued jobs stay until drained."""
        self._closed = True
