"""
Background delivery queue.

Best-effort jobs, such as the verification email sent after registration,
run here after the response has been produced. Every job runs at most once:
there is no retry, and a failing job is logged with its name and dropped.
"""

import asyncio
import logging
from asyncio import Task
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[Any]]


class BackgroundTaskQueue:
    """asyncio queue drained by a single worker task."""

    def __init__(self, maxsize: int = 1000):
        self._queue: asyncio.Queue[tuple[str, JobFactory]] | None = None
        self._maxsize = maxsize
        self._worker: Task[None] | None = None
        self._detached: set[Task[None]] = set()

        self._completed = 0
        self._failed = 0
        self._dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    async def start(self) -> None:
        """Start the worker task."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self._maxsize)
        self._worker = asyncio.create_task(self._process_jobs())
        logger.info("Background task queue started")

    async def stop(self) -> None:
        """Finish queued jobs, then stop the worker."""
        if self._worker is None:
            return
        await self.drain()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info(
            f"Background task queue stopped: {self._completed} completed, "
            f"{self._failed} failed, {self._dropped} dropped"
        )

    def submit(self, name: str, job: JobFactory) -> bool:
        """
        Schedule a job without waiting for it.

        Args:
            name: Label used when logging the outcome
            job: Zero-argument callable returning the awaitable to run

        Returns:
            False if the job was dropped because the queue is full
        """
        if self.running and self._queue is not None:
            try:
                self._queue.put_nowait((name, job))
                return True
            except asyncio.QueueFull:
                self._dropped += 1
                logger.error(f"Background queue full, dropping job {name}")
                return False

        # No worker: run detached on the current loop with the same logging
        task = asyncio.get_running_loop().create_task(self._run(name, job))
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return True

    async def drain(self) -> None:
        """Wait until every submitted job has finished."""
        if self.running and self._queue is not None:
            await self._queue.join()
        if self._detached:
            await asyncio.gather(*list(self._detached))

    async def _process_jobs(self) -> None:
        assert self._queue is not None
        while True:
            name, job = await self._queue.get()
            try:
                await self._run(name, job)
            finally:
                self._queue.task_done()

    async def _run(self, name: str, job: JobFactory) -> None:
        try:
            await job()
            self._completed += 1
            logger.debug(f"Background job {name} completed")
        except Exception as e:
            self._failed += 1
            logger.error(f"Background job {name} failed: {e}", exc_info=True)

    def get_stats(self) -> dict[str, int]:
        """Job counters since construction."""
        return {
            "completed": self._completed,
            "failed": self._failed,
            "dropped": self._dropped,
            "pending": self._queue.qsize() if self._queue is not None else 0,
        }
