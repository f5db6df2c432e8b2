"""Registry of stage orchestrators sharing one dispatcher."""

import logging
from typing import Any, Dict, List, Optional

from complaint_pipeline.errors import JobNotFoundError, UnknownStageError
from complaint_pipeline.jobs.dispatcher import JobDispatcher
from complaint_pipeline.jobs.models import JobRecord
from complaint_pipeline.jobs.orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


class PipelineRegistry:
    """Looks up orchestrators by stage name and enqueues their jobs."""

    def __init__(self):
        self._orchestrators: Dict[str, JobOrchestrator] = {}
        self.dispatcher: Optional[JobDispatcher] = None

    def register(self, orchestrator: JobOrchestrator) -> None:
        self._orchestrators[orchestrator.name] = orchestrator

    def attach_dispatcher(self, dispatcher: JobDispatcher) -> None:
        self.dispatcher = dispatcher

    def has(self, stage: str) -> bool:
        return stage in self._orchestrators

    def get(self, stage: str) -> JobOrchestrator:
        try:
            return self._orchestrators[stage]
        except KeyError:
            raise UnknownStageError(stage) from None

    def stages(self) -> List[str]:
        return list(self._orchestrators)

    def orchestrators(self) -> List[JobOrchestrator]:
        return list(self._orchestrators.values())

    async def submit(self, stage: str, parameters: Optional[Dict[str, Any]] = None) -> JobRecord:
        """Create a pending job for `stage` and enqueue it for execution."""
        if self.dispatcher is None:
            raise RuntimeError("No dispatcher attached to the pipeline registry")
        job = await self.get(stage).create(parameters)
        await self.dispatcher.submit(stage, job.id)
        return job

    async def run(self, stage: str, job_id: str) -> Optional[JobRecord]:
        """Dispatcher entry point."""
        return await self.get(stage).trigger(job_id)

    async def find_job(self, job_id: str) -> JobRecord:
        """Find a job by id in whichever stage's table holds it."""
        prefix = job_id.split("_", 1)[0]
        candidates = sorted(self._orchestrators.values(), key=lambda o: o.name != prefix)
        for orchestrator in candidates:
            try:
                return await orchestrator.get_status(job_id)
            except JobNotFoundError:
                continue
        raise JobNotFoundError(f"Job '{job_id}' not found")

    async def recover(self) -> int:
        """Re-enqueue jobs a previous process persisted but never started."""
        if self.dispatcher is None:
            raise RuntimeError("No dispatcher attached to the pipeline registry")
        requeued = 0
        for orchestrator in self._orchestrators.values():
            for job_id in await orchestrator.recover():
                await self.dispatcher.submit(orchestrator.name, job_id)
                requeued += 1
        if requeued:
            logger.info("Re-enqueued %d pending job(s) from a previous run", requeued)
        return requeued
