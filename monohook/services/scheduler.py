"""
Worker scheduler: the single consumer of the admission queue.

With a concurrency ceiling ``K > 0`` jobs are dispatched in batches of ``K``:
once ``K`` invocations have been started the loop waits for all of them to
finish before dequeuing again, even if some finished early. With ``K == 0``
every job is dispatched as soon as it is dequeued.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, List, Optional, Set

from monohook.services.admission_queue import AdmissionQueue
from monohook.services.invoker import CommandInvoker
from monohook.services.jobs import Job


class SchedulerState(str, enum.Enum):
    IDLE = "idle"
    FILLING = "filling"
    AT_CAPACITY = "at_capacity"


class WorkerScheduler:
    """Dispatch loop enforcing the batched concurrency gate."""

    def __init__(
        self,
        queue: AdmissionQueue,
        invoker: CommandInvoker,
        concurrency: int = 1,
        on_crash: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        if concurrency < 0:
            raise ValueError("concurrency must be >= 0")
        self._logger = logging.getLogger(__name__)
        self._on_crash = on_crash
        self._queue = queue
        self._invoker = invoker
        self._concurrency = concurrency
        self._batch: List[asyncio.Task] = []
        self._tasks: Set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self.dispatched = 0

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def running(self) -> int:
        """Invocations counted against the ceiling since the last reset."""
        return len(self._batch)

    @property
    def active(self) -> int:
        """Invocation tasks that have not finished yet."""
        return len(self._tasks)

    @property
    def state(self) -> SchedulerState:
        if all(task.done() for task in self._batch):
            return SchedulerState.IDLE
        if self._concurrency and len(self._batch) >= self._concurrency:
            return SchedulerState.AT_CAPACITY
        return SchedulerState.FILLING

    @property
    def started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self) -> asyncio.Task:
        if self.started:
            return self._loop_task
        self._loop_task = asyncio.create_task(self.run_forever(), name="monohook-scheduler")
        self._loop_task.add_done_callback(self._on_loop_done)
        return self._loop_task

    async def run_forever(self) -> None:
        self._logger.info("Execution worker started")
        while True:
            job = await self._queue.dequeue()
            self.dispatch(job)
            if self._concurrency and len(self._batch) >= self._concurrency:
                await self._wait_for_batch()

    def dispatch(self, job: Job) -> asyncio.Task:
        """Launch the invocation without waiting for it."""
        task = asyncio.create_task(self._invoker.run(job), name=f"monohook-job-{job.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self._concurrency:
            self._batch.append(task)
        self.dispatched += 1
        self._logger.debug(
            "Dispatched job %d | running=%d capacity=%d",
            job.job_id,
            self.running,
            self._concurrency,
        )
        return task

    async def _wait_for_batch(self) -> None:
        self._logger.debug("Concurrency limit reached, waiting for %d invocations", len(self._batch))
        await asyncio.wait(self._batch)
        self._batch = []

    async def stop(self) -> None:
        """
        Stop dequeuing, release the jobs still queued and cancel the waits on
        in-flight invocations. Running children are left to finish on their own.
        """
        self._queue.close()
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        dropped = 0
        while True:
            job = self._queue.try_dequeue()
            if job is None:
                break
            job.close()
            dropped += 1
        if dropped:
            self._logger.warning("Discarded %d queued jobs on shutdown", dropped)

        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._batch = []

    def _on_loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.critical("Execution worker crashed", exc_info=exc)
            if self._on_crash is not None:
                self._on_crash(exc)
