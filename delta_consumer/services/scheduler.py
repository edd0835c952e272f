"""In-process scheduling: sequential processing queues and periodic triggers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    JobFactory = Callable[[], Awaitable[Any]]

logger = logging.getLogger(__name__)


class ProcessingQueue:
    """Runs enqueued jobs one at a time, in order, on a single worker.

    A failing job is logged and does not stop the worker.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue[tuple[str, JobFactory]] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self.running: str | None = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def idle(self) -> bool:
        return self.running is None and self._queue.empty()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._work(), name=f"{self.name}-worker")

    def enqueue(self, label: str, factory: JobFactory) -> None:
        self._queue.put_nowait((label, factory))
        logger.info("Queued %s on %s queue (%d pending)", label, self.name, self.pending)

    async def _work(self) -> None:
        while True:
            label, factory = await self._queue.get()
            self.running = label
            try:
                await factory()
            except Exception as exc:
                logger.error("%s on %s queue failed: %s", label, self.name, exc, exc_info=True)
            finally:
                self.running = None
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has run."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._worker
        self._worker = None


class PeriodicTrigger:
    """Enqueues a job every ``interval`` seconds; an interval of 0 disables it."""

    def __init__(
        self, name: str, interval: float, queue: ProcessingQueue, factory: JobFactory
    ) -> None:
        self.name = name
        self.interval = interval
        self.queue = queue
        self.factory = factory
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        if self.interval <= 0:
            logger.info("Periodic %s disabled", self.name)
            return
        self._task = asyncio.create_task(self._loop(), name=f"{self.name}-trigger")
        logger.info("Periodic %s every %s seconds", self.name, self.interval)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            # Skip a tick while the previous run is still queued or running
            if self.queue.idle:
                self.queue.enqueue(self.name, self.factory)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
