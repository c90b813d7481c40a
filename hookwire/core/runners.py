"""Task runners: inline execution and a queued asyncio worker pool."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Coroutine

from hookwire.utils.logging import get_logger

log = get_logger(__name__)

Job = Callable[[], Coroutine[Any, Any, None]]
Sleep = Callable[[float], Awaitable[Any]]

# Seconds to wait for cancelled workers before cancelling them again
_STOP_GRACE = 1.0


class TaskRunner(ABC):
    @abstractmethod
    async def submit(self, job: Job, delay: float = 0.0) -> None:
        """Run ``job`` after ``delay`` seconds."""

    async def start(self) -> None:
        """Start workers. Override if needed."""

    async def stop(self) -> None:
        """Stop workers. Override if needed."""

    async def join(self) -> None:
        """Wait for submitted work to finish. Override if needed."""


class InlineRunner(TaskRunner):
    """Runs the job in the caller's task; ``submit`` returns once it has finished."""

    def __init__(self, sleep: Sleep = asyncio.sleep) -> None:
        self._sleep = sleep

    async def submit(self, job: Job, delay: float = 0.0) -> None:
        if delay > 0:
            await self._sleep(delay)
        await job()


class QueuedRunner(TaskRunner):
    """Background worker pool fed by a queue; delayed jobs wait on a timer task first.

    ``stop`` queues one ``None`` per worker so idle workers exit on their own,
    then cancels whatever is still running until every task has finished.
    """

    def __init__(self, worker_count: int = 4, sleep: Sleep = asyncio.sleep) -> None:
        self._worker_count = max(worker_count, 1)
        self._sleep = sleep
        self._queue: asyncio.Queue[Job | None] | None = None
        self._workers: list[asyncio.Task[None]] = []
        self._timers: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        if self._workers:
            return
        queue: asyncio.Queue[Job | None] = asyncio.Queue()
        self._queue = queue
        self._workers = [
            asyncio.create_task(self._worker(queue), name=f"hookwire-worker-{i}")
            for i in range(self._worker_count)
        ]
        log.info("queued_runner_started", workers=self._worker_count)

    def _running_queue(self) -> asyncio.Queue[Job | None]:
        if self._queue is None:
            raise RuntimeError("queued runner is not running")
        return self._queue

    async def submit(self, job: Job, delay: float = 0.0) -> None:
        if not self._workers:
            await self.start()
        queue = self._running_queue()
        if delay > 0:
            timer = asyncio.create_task(self._deferred(job, delay))
            self._timers.add(timer)
            timer.add_done_callback(self._timers.discard)
            return
        await queue.put(job)

    async def _deferred(self, job: Job, delay: float) -> None:
        await self._sleep(delay)
        await self._running_queue().put(job)

    async def _worker(self, queue: asyncio.Queue[Job | None]) -> None:
        while True:
            job = await queue.get()
            try:
                if job is None:
                    return
                await job()
            except Exception:
                log.exception("queued_job_error")
            finally:
                queue.task_done()

    async def join(self) -> None:
        if self._queue is None:
            return
        while True:
            if self._timers:
                await asyncio.gather(*list(self._timers), return_exceptions=True)
            await self._queue.join()
            if not self._timers and self._queue.empty():
                return

    async def stop(self) -> None:
        if self._timers:
            log.warning("queued_runner_dropping_retries", count=len(self._timers))
        if self._queue is not None:
            for _ in self._workers:
                self._queue.put_nowait(None)

        pending: set[asyncio.Task[None]] = {*self._workers, *self._timers}
        while pending:
            for task in pending:
                task.cancel()
            _, pending = await asyncio.wait(pending, timeout=_STOP_GRACE)
            if pending:
                log.warning("queued_runner_stop_waiting", tasks=len(pending))

        self._workers.clear()
        self._timers.clear()
        self._queue = None
