"""Generic job orchestrator for one pipeline stage.

Lifecycle of a job:

    create()   -> row written as `pending`, returns immediately
    trigger()  -> claims the row (`pending` -> `running`), then loops:
                  fetch a page of unprocessed items, plan batches, run each
                  batch through the resilient executor with bounded
                  concurrency, persist progress after every batch. Stops when
                  the backlog is empty, the wall-clock budget is spent or the
                  per-run item ceiling is reached, then marks the job
                  `completed` (flagging `needs_continuation` when items are
                  left) and hands off to the next stage.

Any exception escaping the loop marks the job `failed`. Nothing here
re-runs a job; retries happen per item inside the executor.
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from pydantic import ValidationError

from complaint_pipeline.errors import InvalidParametersError, JobNotFoundError
from complaint_pipeline.jobs.models import (
    JobProgress,
    JobRecord,
    JobStatus,
    WorkItem,
    new_job_id,
)
from complaint_pipeline.processing.batch_planner import Batch, BatchPlanner
from complaint_pipeline.resilience.executor import ResilientCallExecutor, RetryPolicy
from complaint_pipeline.resilience.reliability import ReliabilityTracker
from complaint_pipeline.stages.base import PipelineStage, StageParameters
from complaint_pipeline.storage.base import PipelineStore, WorkQuery

logger = logging.getLogger(__name__)

STOP_EXHAUSTED = "exhausted"
STOP_ITEM_CEILING = "item_ceiling"
STOP_TIME_BUDGET = "time_budget"
STOP_STALLED = "stalled"


class _RunState:
    """Mutable bookkeeping for one trigger() call."""

    def __init__(self, job: JobRecord, started: float):
        self.job = job
        self.started = started
        self.progress = JobProgress(current_step="Starting")
        self.attempted: Set[str] = set()
        self.stop_reason: Optional[str] = None

    @property
    def produced(self) -> int:
        return self.progress.posts_success + self.progress.posts_fallback


class JobOrchestrator:
    """Owns job lifecycle for one stage and drives its work through the
    batch planner and the resilient executor."""

    def __init__(
        self,
        stage: PipelineStage,
        store: PipelineStore,
        tracker: Optional[ReliabilityTracker] = None,
        policy: Optional[RetryPolicy] = None,
        handoff=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.stage = stage
        self.store = store
        self.tracker = tracker or ReliabilityTracker(name=f"{stage.name}-inference")
        self.executor = ResilientCallExecutor(self.tracker, policy, sleep=sleep)
        self.handoff = handoff
        self._clock = clock
        self._sleep = sleep

    @property
    def name(self) -> str:
        return self.stage.name

    @property
    def table(self) -> str:
        return self.stage.jobs_table

    # ------------------------------------------------------------------
    # create / get_status
    # ------------------------------------------------------------------

    def validate_parameters(self, parameters: Optional[Dict[str, Any]]) -> StageParameters:
        try:
            return self.stage.parse_parameters(parameters)
        except ValidationError as e:
            raise InvalidParametersError(
                f"Invalid parameters for stage '{self.name}': {e}"
            ) from e

    async def create(self, parameters: Optional[Dict[str, Any]] = None) -> JobRecord:
        """Validate parameters and persist a pending job. Does no other work."""
        params = self.validate_parameters(parameters)
        job = JobRecord(
            id=new_job_id(self.name),
            stage=self.name,
            parameters=params.model_dump(mode="json"),
        )
        await self.store.insert_job(self.table, job.to_row())
        logger.info("Created %s job %s", self.name, job.id)
        return job

    async def get_status(self, job_id: str) -> JobRecord:
        row = await self.store.get_job(self.table, job_id)
        if row is None:
            raise JobNotFoundError(f"Job '{job_id}' not found in {self.table}")
        return JobRecord.from_row(self.name, row)

    async def list_jobs(
        self, statuses: Optional[Sequence[JobStatus]] = None, limit: int = 50
    ) -> List[JobRecord]:
        values = [s.value for s in statuses] if statuses is not None else None
        rows = await self.store.list_jobs(self.table, statuses=values, limit=limit)
        return [JobRecord.from_row(self.name, row) for row in rows]

    async def backlog_size(self, parameters: Optional[Dict[str, Any]] = None) -> int:
        params = self.validate_parameters(parameters)
        return await self.store.count_work_items(self.stage.work_query(params))

    async def recover(self) -> List[str]:
        """Reconcile jobs left behind by a previous process.

        Jobs still `running` were interrupted mid-run and are marked failed.
        Returns the ids of `pending` jobs, which the caller should re-enqueue.
        """
        for job in await self.list_jobs([JobStatus.RUNNING], limit=500):
            await self.store.update_job(
                self.table,
                job.id,
                {
                    "status": JobStatus.FAILED.value,
                    "completed_at": datetime.utcnow().isoformat(),
                    "error": "Interrupted: process stopped while the job was running",
                },
                only_if_status=[JobStatus.RUNNING.value],
            )
            logger.warning("Marked interrupted %s job %s as failed", self.name, job.id)

        pending = await self.list_jobs([JobStatus.PENDING], limit=500)
        # Oldest first so they run in creation order.
        return [job.id for job in reversed(pending)]

    # ------------------------------------------------------------------
    # trigger
    # ------------------------------------------------------------------

    async def trigger(self, job_id: str) -> Optional[JobRecord]:
        """Run a pending job to a terminal state.

        Returns the final record, or None when the job was not pending
        (already claimed by another worker or already finished).
        """
        job = await self.get_status(job_id)
        if job.status != JobStatus.PENDING:
            logger.warning(
                "Not running %s job %s: status is %s", self.name, job_id, job.status.value
            )
            return None

        state = _RunState(job, started=self._clock())
        claimed = await self.store.update_job(
            self.table,
            job_id,
            {
                "status": JobStatus.RUNNING.value,
                "started_at": datetime.utcnow().isoformat(),
                "progress": state.progress.model_dump(),
            },
            only_if_status=[JobStatus.PENDING.value],
        )
        if not claimed:
            logger.warning("%s job %s was claimed by another worker", self.name, job_id)
            return None

        logger.info("Job %s: starting %s run", job_id, self.name)
        try:
            params = self.validate_parameters(job.parameters)
            result = await self._execute(state, params)
            state.progress.current_step = "Completed"
            completed = await self.store.update_job(
                self.table,
                job_id,
                {
                    "status": JobStatus.COMPLETED.value,
                    "completed_at": datetime.utcnow().isoformat(),
                    "progress": state.progress.model_dump(),
                    "result": result,
                },
                only_if_status=[JobStatus.RUNNING.value],
            )
            if not completed:
                logger.warning(
                    "Job %s left running state during the run; not handing off", job_id
                )
                return await self.get_status(job_id)
            logger.info(
                "Job %s completed: %d processed, %d ok, %d fallback, %d failed (%s)",
                job_id,
                state.progress.posts_processed,
                state.progress.posts_success,
                state.progress.posts_fallback,
                state.progress.posts_failed,
                state.stop_reason,
            )
        except Exception as e:
            logger.exception("Job %s failed: %s", job_id, e)
            await self._mark_failed(job_id, f"{type(e).__name__}: {e}")
            return await self.get_status(job_id)

        # The next stage only ever sees a completed source job.
        result["handoff"] = await self._hand_off(state, params)
        try:
            await self.store.update_job(
                self.table,
                job_id,
                {"result": result},
                only_if_status=[JobStatus.COMPLETED.value],
            )
        except Exception as e:
            logger.error("Job %s: could not record handoff outcome: %s", job_id, e)

        return await self.get_status(job_id)

    async def _mark_failed(self, job_id: str, error: str) -> None:
        try:
            await self.store.update_job(
                self.table,
                job_id,
                {
                    "status": JobStatus.FAILED.value,
                    "completed_at": datetime.utcnow().isoformat(),
                    "error": error,
                },
                only_if_status=[JobStatus.RUNNING.value],
            )
        except Exception:
            logger.exception("Could not record failure of job %s", job_id)

    def _over_budget(self, state: _RunState, params: StageParameters) -> bool:
        return self._clock() - state.started >= params.max_processing_seconds

    async def _execute(self, state: _RunState, params: StageParameters) -> Dict[str, Any]:
        query = self.stage.work_query(params)
        planner = BatchPlanner(
            complex_batch_size=params.complex_batch_size,
            medium_batch_size=params.medium_batch_size,
            simple_batch_size=params.simple_batch_size,
        )
        progress = state.progress
        self.store.maintain()

        backlog = await self.store.count_work_items(query)
        progress.posts_total = min(backlog, params.max_items_per_run)
        progress.current_step = f"Found {backlog} item(s) to process"
        await self._save_progress(state)
        logger.info("Job %s: %d item(s) waiting", state.job.id, backlog)

        batches_run = 0
        while state.stop_reason is None:
            remaining = params.max_items_per_run - progress.posts_processed
            if remaining <= 0:
                state.stop_reason = STOP_ITEM_CEILING
                break
            if self._over_budget(state, params):
                state.stop_reason = STOP_TIME_BUDGET
                break

            limit = min(params.page_size, remaining)
            rows = await self.store.fetch_work_items(query, limit=limit)
            progress.pages_fetched += 1
            if not rows:
                state.stop_reason = STOP_EXHAUSTED
                break

            items = [
                WorkItem.from_row(row) for row in rows
                if str(row["id"]) not in state.attempted
            ]
            if not items:
                # Every row on the page was already attempted in this run and
                # its write-back failed; fetching again would loop forever.
                state.stop_reason = STOP_STALLED
                break

            batches = planner.plan(items)
            progress.total_batches += len(batches)
            for batch in batches:
                if self._over_budget(state, params):
                    state.stop_reason = STOP_TIME_BUDGET
                    break
                if batches_run and params.inter_batch_delay_seconds:
                    await self._sleep(params.inter_batch_delay_seconds)
                await self._run_batch(state, params, batch)
                batches_run += 1
                progress.current_batch = batches_run
                progress.current_step = (
                    f"Completed batch {batches_run} ({batch.tier.value}, {len(batch)} items)"
                )
                await self._save_progress(state)

            if state.stop_reason is None and len(rows) < limit:
                state.stop_reason = STOP_EXHAUSTED

        needs_continuation = await self._needs_continuation(state, query)
        return self._build_result(state, needs_continuation)

    async def _run_batch(
        self, state: _RunState, params: StageParameters, batch: Batch[WorkItem]
    ) -> None:
        semaphore = asyncio.Semaphore(params.concurrency)

        async def run_one(item: WorkItem) -> None:
            async with semaphore:
                await self._process_item(state, params, item)

        await asyncio.gather(*(run_one(item) for item in batch.items))

    async def _process_item(
        self, state: _RunState, params: StageParameters, item: WorkItem
    ) -> None:
        progress = state.progress
        state.attempted.add(item.id)

        outcome = await self.executor.execute(
            item,
            lambda i: self.stage.process(i, params),
            lambda i: self.stage.fallback(i, params),
        )

        try:
            written = await self.store.write_back(
                self.stage.work_table, item.id, outcome.value, self.stage.guard_column
            )
        except Exception as e:
            logger.error("Job %s: write-back of item %s failed: %s", state.job.id, item.id, e)
            progress.posts_failed += 1
        else:
            if not written:
                progress.posts_skipped += 1
            elif outcome.used_fallback:
                progress.posts_fallback += 1
            else:
                progress.posts_success += 1
        finally:
            progress.posts_processed += 1

    async def _save_progress(self, state: _RunState) -> None:
        await self.store.update_job(
            self.table,
            state.job.id,
            {"progress": state.progress.model_dump()},
            only_if_status=[JobStatus.RUNNING.value],
        )

    async def _needs_continuation(self, state: _RunState, query: WorkQuery) -> bool:
        if state.stop_reason == STOP_EXHAUSTED:
            return False
        if state.stop_reason == STOP_STALLED:
            return True
        return await self.store.count_work_items(query) > 0

    def _build_result(self, state: _RunState, needs_continuation: bool) -> Dict[str, Any]:
        progress = state.progress
        duration = self._clock() - state.started
        minutes = duration / 60
        processed = progress.posts_processed
        return {
            "status": "success",
            "stage": self.name,
            "stop_reason": state.stop_reason,
            "needs_continuation": needs_continuation,
            "total_processed": processed,
            "successful": progress.posts_success,
            "fallback": progress.posts_fallback,
            "failed": progress.posts_failed,
            "skipped": progress.posts_skipped,
            "records_produced": state.produced,
            "batches": progress.current_batch,
            "pages": progress.pages_fetched,
            "duration_ms": int(duration * 1000),
            "duration_minutes": round(minutes, 1),
            "items_per_minute": round(processed / minutes, 1) if minutes > 0 else None,
            "success_rate": round(100 * progress.posts_success / processed, 1) if processed else 0,
            "reliability": self.tracker.snapshot(),
        }

    async def _hand_off(self, state: _RunState, params: StageParameters) -> Dict[str, Any]:
        next_stage = self.stage.next_stage
        if next_stage is None:
            return {"status": "none"}
        if not params.handoff:
            return {"status": "disabled", "target": next_stage}
        if state.produced == 0:
            return {"status": "skipped", "target": next_stage, "reason": "no records produced"}
        if self.handoff is None:
            return {"status": "skipped", "target": next_stage, "reason": "no handoff configured"}
        try:
            return await self.handoff.handoff(
                source_stage=self.name,
                target_stage=next_stage,
                source_job_id=state.job.id,
                records_produced=state.produced,
                parameters=self.stage.handoff_parameters(params),
            )
        except Exception as e:
            logger.error("Job %s: handoff to %s failed: %s", state.job.id, next_stage, e)
            return {"status": "failed", "target": next_stage, "error": str(e)}
