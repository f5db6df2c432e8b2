"""Opt-in scheduler that keeps stages draining their backlog.

Jobs that stop at the time budget or item ceiling finish with
`needs_continuation: true` and are never re-run automatically. When this
scheduler is enabled it polls every stage and starts a new job whenever
enough items are waiting and no job of that stage is pending or running.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from complaint_pipeline.jobs.models import JobStatus

logger = logging.getLogger(__name__)

_ACTIVE = [JobStatus.PENDING, JobStatus.RUNNING]


class AutoTriggerScheduler:

    def __init__(self, registry, interval_seconds: float, min_items: int = 10):
        self._registry = registry
        self._interval = interval_seconds
        self._min_items = min_items
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def check_once(self) -> Dict[str, str]:
        """Evaluate every stage once. Returns stage -> decision."""
        decisions: Dict[str, str] = {}
        for orchestrator in self._registry.orchestrators():
            name = orchestrator.name
            try:
                active: List = await orchestrator.list_jobs(_ACTIVE, limit=1)
                if active:
                    decisions[name] = f"busy: job {active[0].id} is {active[0].status.value}"
                    continue
                backlog = await orchestrator.backlog_size()
                if backlog < self._min_items:
                    decisions[name] = f"idle: {backlog} item(s) waiting"
                    continue
                job = await self._registry.submit(name, {"triggered_by": "auto_scheduler"})
                decisions[name] = f"triggered: job {job.id} for {backlog} item(s)"
            except Exception as e:
                logger.exception("Auto-trigger check for %s failed", name)
                decisions[name] = f"error: {e}"
            logger.info("Auto-trigger %s -> %s", name, decisions[name])
        return decisions

    async def start(self) -> None:
        if self._interval <= 0 or self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            await self.check_once()
            await asyncio.sleep(self._interval)
