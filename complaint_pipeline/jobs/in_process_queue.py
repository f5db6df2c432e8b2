"""In-process job queue using asyncio.

The trigger handler persists a pending job and enqueues its id here; a
small pool of worker tasks drains the queue and runs each job. The job row
stays `pending` until a worker claims it, so a crash in between leaves an
observable record that the registry re-enqueues on the next start.
No external dependencies (Redis, Celery) needed.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from complaint_pipeline.jobs.dispatcher import JobDispatcher

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async job queue drained by `workers` concurrent tasks."""

    def __init__(self, runner: Callable[[str, str], Awaitable[object]], workers: int = 1):
        """
        runner: async callable(stage, job_id)
            Runs one job to completion. Expected to record its own failures;
            anything it raises is logged and the worker moves on.
        """
        self._queue: asyncio.Queue[Tuple[str, str]] = asyncio.Queue()
        self._runner = runner
        self._workers = max(1, workers)
        self._tasks: List[asyncio.Task] = []
        self._running = False

    async def submit(self, stage: str, job_id: str) -> None:
        await self._queue.put((stage, job_id))
        logger.info("Queued %s job %s (%d waiting)", stage, job_id, self._queue.qsize())

    def pending_count(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(n), name=f"job-worker-{n}")
            for n in range(self._workers)
        ]

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued job has been run."""
        await asyncio.wait_for(self._queue.join(), timeout=timeout)

    async def _worker_loop(self, worker_no: int) -> None:
        """Process jobs one at a time from the queue."""
        while self._running:
            try:
                stage, job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                logger.info("Worker %d picked up %s job %s", worker_no, stage, job_id)
                await self._runner(stage, job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %d: %s job %s crashed", worker_no, stage, job_id)
            finally:
                self._queue.task_done()
