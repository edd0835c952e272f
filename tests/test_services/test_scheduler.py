"""Tests for the processing queues and periodic triggers."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from delta_consumer.services.scheduler import PeriodicTrigger, ProcessingQueue

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable


class TestProcessingQueue:
    async def test_jobs_run_in_order(self) -> None:
        queue = ProcessingQueue("test")
        ran: list[str] = []

        def job(name: str) -> Callable[[], Awaitable[None]]:
            async def run() -> None:
                await asyncio.sleep(0)
                ran.append(name)

            return run

        for name in ("first", "second", "third"):
            queue.enqueue(name, job(name))
        assert queue.pending == 3
        queue.start()
        await queue.join()
        await queue.stop()

        assert ran == ["first", "second", "third"]
        assert queue.idle

    async def test_failing_job_does_not_stop_the_worker(self) -> None:
        queue = ProcessingQueue("test")
        ran: list[str] = []

        async def failing() -> None:
            raise RuntimeError("boom")

        async def succeeding() -> None:
            ran.append("after")

        queue.start()
        queue.enqueue("failing", failing)
        queue.enqueue("succeeding", succeeding)
        await queue.join()
        await queue.stop()

        assert ran == ["after"]

    async def test_running_job_is_not_idle(self) -> None:
        queue = ProcessingQueue("test")
        release = asyncio.Event()
        started = asyncio.Event()

        async def blocking() -> None:
            started.set()
            await release.wait()

        queue.start()
        queue.enqueue("blocking", blocking)
        await asyncio.wait_for(started.wait(), timeout=1)
        assert queue.running == "blocking"
        assert not queue.idle

        release.set()
        await queue.join()
        assert queue.idle
        await queue.stop()

    async def test_stop_without_start(self) -> None:
        await ProcessingQueue("test").stop()


class TestPeriodicTrigger:
    async def test_zero_interval_disables(self) -> None:
        queue = ProcessingQueue("test")

        async def job() -> None:
            pass

        trigger = PeriodicTrigger("sync", 0, queue, job)
        trigger.start()
        await asyncio.sleep(0.02)
        assert queue.pending == 0
        await trigger.stop()

    async def test_trigger_enqueues_periodically(self) -> None:
        queue = ProcessingQueue("test")
        fired = asyncio.Event()

        async def job() -> None:
            fired.set()

        queue.start()
        trigger = PeriodicTrigger("sync", 0.01, queue, job)
        trigger.start()
        await asyncio.wait_for(fired.wait(), timeout=1)
        await trigger.stop()
        await queue.stop()

    async def test_tick_is_skipped_while_busy(self) -> None:
        queue = ProcessingQueue("test")

        async def job() -> None:
            pass

        # The queue is never started, so the first enqueued run stays pending
        trigger = PeriodicTrigger("sync", 0.01, queue, job)
        trigger.start()
        await asyncio.sleep(0.1)
        await trigger.stop()

        assert queue.pending == 1
