import asyncio

import pytest

from complaint_pipeline.errors import (
    InvalidParametersError,
    JobNotFoundError,
    TransientServerError,
)
from complaint_pipeline.jobs.models import JobRecord, JobStatus
from complaint_pipeline.jobs.orchestrator import JobOrchestrator
from complaint_pipeline.resilience.executor import RetryPolicy
from complaint_pipeline.resilience.reliability import ReliabilityTracker
from complaint_pipeline.storage.memory_store import InMemoryStore
from helpers import EchoStage, make_posts

FAST = {"inter_batch_delay_seconds": 0}


class FakeHandoff:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def handoff(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail:
            raise ConnectionError("downstream unreachable")
        return {"status": "triggered", "target": kwargs["target_stage"], "job_id": "next_1"}


class StatusReadingHandoff(FakeHandoff):
    """Records the source job's status as seen by the next stage."""

    def __init__(self, store, jobs_table):
        super().__init__()
        self.store = store
        self.jobs_table = jobs_table
        self.source_statuses = []

    async def handoff(self, **kwargs):
        row = await self.store.get_job(self.jobs_table, kwargs["source_job_id"])
        self.source_statuses.append(row["status"])
        return await super().handoff(**kwargs)


class CompletionWriteFailsStore(InMemoryStore):
    async def update_job(self, table, job_id, fields, only_if_status=None):
        if fields.get("status") == JobStatus.COMPLETED.value:
            raise ConnectionError("store hiccup")
        return await super().update_job(table, job_id, fields, only_if_status)


class FailingFetchStore(InMemoryStore):
    async def fetch_work_items(self, query, limit):
        raise RuntimeError("db down")


class BrokenWriteStore(InMemoryStore):
    """Write-back raises for every item."""

    async def write_back(self, table, item_id, fields, guard_column):
        raise ConnectionError("write rejected")


class ConcurrentWriterStore(InMemoryStore):
    """Another writer processes `taken` items right before our write-back."""

    def __init__(self, taken):
        super().__init__()
        self.taken = set(taken)

    async def write_back(self, table, item_id, fields, guard_column):
        if item_id in self.taken:
            await super().write_back(table, item_id, {guard_column: "other"}, guard_column)
        return await super().write_back(table, item_id, fields, guard_column)


class ConcurrencyProbeStage(EchoStage):
    def __init__(self):
        super().__init__()
        self.in_flight = 0
        self.peak = 0

    async def process(self, item, params):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.001)
        self.in_flight -= 1
        return await super().process(item, params)


def make_orchestrator(store, clock, sleep, stage=None, handoff=None, tracker=None):
    return JobOrchestrator(
        stage or EchoStage(),
        store,
        tracker=tracker or ReliabilityTracker("echo-inference", clock=clock),
        policy=RetryPolicy(max_attempts=2, backoff_base=1),
        handoff=handoff,
        clock=clock,
        sleep=sleep,
    )


async def run_job(orchestrator, **parameters):
    job = await orchestrator.create({**FAST, **parameters})
    return await orchestrator.trigger(job.id)


class TestJobCreation:
    """create / get_status"""

    @pytest.mark.asyncio
    async def test_create_persists_pending_job(self, store, clock, recording_sleep):
        orchestrator = make_orchestrator(store, clock, recording_sleep)

        job = await orchestrator.create({"page_size": 10})

        assert job.id.startswith("echo_")
        assert job.status == JobStatus.PENDING
        fetched = await orchestrator.get_status(job.id)
        assert fetched.status == JobStatus.PENDING
        assert fetched.parameters["page_size"] == 10
        assert fetched.parameters["max_items_per_run"] == 200

    @pytest.mark.asyncio
    async def test_invalid_parameters_create_nothing(self, store, clock, recording_sleep):
        orchestrator = make_orchestrator(store, clock, recording_sleep)

        with pytest.raises(InvalidParametersError):
            await orchestrator.create({"concurrency": 0})
        with pytest.raises(InvalidParametersError):
            await orchestrator.create({"page_size": "many"})

        assert store.rows("echo_jobs") == []

    @pytest.mark.asyncio
    async def test_unknown_job(self, store, clock, recording_sleep):
        orchestrator = make_orchestrator(store, clock, recording_sleep)
        with pytest.raises(JobNotFoundError):
            await orchestrator.get_status("echo_missing")


class TestJobExecution:
    """trigger() run loop"""

    @pytest.mark.asyncio
    async def test_drains_backlog_in_pages(self, seeded_store, clock, recording_sleep):
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep)

        job = await run_job(orchestrator, page_size=2)

        assert job.status == JobStatus.COMPLETED
        assert job.progress.pages_fetched == 3
        assert job.progress.posts_processed == 5
        assert job.progress.posts_success == 5
        assert job.progress.current_step == "Completed"
        assert job.result["stop_reason"] == "exhausted"
        assert job.result["needs_continuation"] is False
        assert job.result["records_produced"] == 5
        assert job.started_at is not None and job.completed_at is not None
        for row in seeded_store.rows("posts"):
            assert row["result"] == row["title"].upper()

    @pytest.mark.asyncio
    async def test_item_ceiling_requests_continuation(self, seeded_store, clock, recording_sleep):
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep)

        job = await run_job(orchestrator, page_size=2, max_items_per_run=3)

        assert job.status == JobStatus.COMPLETED
        assert job.progress.posts_processed == 3
        assert job.progress.posts_total == 3
        assert job.result["stop_reason"] == "item_ceiling"
        assert job.result["needs_continuation"] is True
        assert await orchestrator.backlog_size() == 2

    @pytest.mark.asyncio
    async def test_time_budget_stops_between_pages(self, seeded_store, clock, recording_sleep):
        stage = EchoStage(on_call=lambda item: clock.advance(100))
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep, stage=stage)

        job = await run_job(orchestrator, page_size=2, max_processing_seconds=150)

        assert job.status == JobStatus.COMPLETED
        assert job.progress.posts_processed == 2
        assert job.result["stop_reason"] == "time_budget"
        assert job.result["needs_continuation"] is True

    @pytest.mark.asyncio
    async def test_newest_items_first(self, seeded_store, clock, recording_sleep):
        stage = EchoStage()
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep, stage=stage)

        await run_job(orchestrator, page_size=2, max_items_per_run=2, concurrency=1)

        # make_posts gives p0 the latest created_at
        assert stage.calls == ["p0", "p1"]

    @pytest.mark.asyncio
    async def test_inter_batch_delay(self, seeded_store, clock, recording_sleep):
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep)
        job = await orchestrator.create({
            "page_size": 3,
            "max_items_per_run": 3,
            "simple_batch_size": 1,
            "inter_batch_delay_seconds": 2,
        })

        job = await orchestrator.trigger(job.id)

        assert job.progress.current_batch == 3
        assert recording_sleep.delays == [2, 2]

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, store, clock, recording_sleep):
        store.seed("posts", make_posts(12))
        stage = ConcurrencyProbeStage()
        orchestrator = make_orchestrator(store, clock, recording_sleep, stage=stage)

        job = await run_job(orchestrator, page_size=12, concurrency=3)

        assert job.progress.posts_success == 12
        assert 1 < stage.peak <= 3

    @pytest.mark.asyncio
    async def test_failed_inference_uses_fallback(self, seeded_store, clock, recording_sleep):
        stage = EchoStage(fail_ids={"p1"})
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep, stage=stage)

        job = await run_job(orchestrator)

        assert job.status == JobStatus.COMPLETED
        assert job.progress.posts_success == 4
        assert job.progress.posts_fallback == 1
        assert seeded_store.get_row("posts", "p1")["mode"] == "fallback"
        assert job.result["reliability"]["failed_requests"] == 1

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, seeded_store, clock, recording_sleep):
        stage = EchoStage(
            fail_ids={"p2"}, error_factory=lambda: TransientServerError("502", status_code=502)
        )
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep, stage=stage)

        job = await run_job(orchestrator)

        assert stage.calls.count("p2") == 2
        assert recording_sleep.delays == [1]
        assert job.progress.posts_fallback == 1

    @pytest.mark.asyncio
    async def test_item_taken_by_other_writer_is_skipped(self, clock, recording_sleep):
        store = ConcurrentWriterStore(taken={"p3"})
        store.seed("posts", make_posts(5))
        orchestrator = make_orchestrator(store, clock, recording_sleep)

        job = await run_job(orchestrator)

        assert job.progress.posts_skipped == 1
        assert job.progress.posts_success == 4
        assert store.get_row("posts", "p3")["processed_at"] == "other"

    @pytest.mark.asyncio
    async def test_failed_write_back_does_not_loop(self, clock, recording_sleep):
        store = BrokenWriteStore()
        store.seed("posts", make_posts(2))
        orchestrator = make_orchestrator(store, clock, recording_sleep)

        job = await run_job(orchestrator, page_size=2)

        assert job.status == JobStatus.COMPLETED
        assert job.progress.posts_failed == 2
        assert job.progress.posts_processed == 2
        assert job.result["stop_reason"] == "stalled"
        assert job.result["needs_continuation"] is True

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(self, clock, recording_sleep):
        store = FailingFetchStore()
        orchestrator = make_orchestrator(store, clock, recording_sleep)

        job = await run_job(orchestrator)

        assert job.status == JobStatus.FAILED
        assert job.error == "RuntimeError: db down"
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_only_pending_jobs_run(self, seeded_store, clock, recording_sleep):
        orchestrator = make_orchestrator(seeded_store, clock, recording_sleep)
        job = await run_job(orchestrator)
        assert job.status == JobStatus.COMPLETED

        assert await orchestrator.trigger(job.id) is None

    @pytest.mark.asyncio
    async def test_empty_backlog(self, store, clock, recording_sleep):
        orchestrator = make_orchestrator(store, clock, recording_sleep)

        job = await run_job(orchestrator)

        assert job.status == JobStatus.COMPLETED
        assert job.result["total_processed"] == 0
        assert job.result["success_rate"] == 0
        assert job.result["needs_continuation"] is False


class TestHandoff:
    """Handoff to the next stage after completion"""

    def _stage(self):
        stage = EchoStage()
        stage.next_stage = "downstream"
        return stage

    @pytest.mark.asyncio
    async def test_hands_off_produced_records(self, seeded_store, clock, recording_sleep):
        handoff = FakeHandoff()
        orchestrator = make_orchestrator(
            seeded_store, clock, recording_sleep, stage=self._stage(), handoff=handoff
        )

        job = await run_job(orchestrator, platform="reddit", concurrency=4)

        assert job.result["handoff"]["status"] == "triggered"
        call = handoff.calls[0]
        assert call["source_stage"] == "echo"
        assert call["target_stage"] == "downstream"
        assert call["source_job_id"] == job.id
        assert call["records_produced"] == 5
        assert call["parameters"]["platform"] == "reddit"
        assert call["parameters"]["concurrency"] == 4

    @pytest.mark.asyncio
    async def test_no_records_no_handoff(self, store, clock, recording_sleep):
        handoff = FakeHandoff()
        orchestrator = make_orchestrator(
            store, clock, recording_sleep, stage=self._stage(), handoff=handoff
        )

        job = await run_job(orchestrator)

        assert job.result["handoff"]["status"] == "skipped"
        assert handoff.calls == []

    @pytest.mark.asyncio
    async def test_handoff_disabled_by_parameter(self, seeded_store, clock, recording_sleep):
        handoff = FakeHandoff()
        orchestrator = make_orchestrator(
            seeded_store, clock, recording_sleep, stage=self._stage(), handoff=handoff
        )

        job = await run_job(orchestrator, handoff=False)

        assert job.result["handoff"]["status"] == "disabled"
        assert handoff.calls == []

    @pytest.mark.asyncio
    async def test_handoff_failure_keeps_job_completed(self, seeded_store, clock, recording_sleep):
        orchestrator = make_orchestrator(
            seeded_store, clock, recording_sleep,
            stage=self._stage(), handoff=FakeHandoff(fail=True),
        )

        job = await run_job(orchestrator)

        assert job.status == JobStatus.COMPLETED
        assert job.result["handoff"]["status"] == "failed"
        assert "unreachable" in job.result["handoff"]["error"]

    @pytest.mark.asyncio
    async def test_source_job_is_completed_before_handoff(self, seeded_store, clock, recording_sleep):
        handoff = StatusReadingHandoff(seeded_store, "echo_jobs")
        orchestrator = make_orchestrator(
            seeded_store, clock, recording_sleep, stage=self._stage(), handoff=handoff
        )

        job = await run_job(orchestrator)

        assert handoff.source_statuses == ["completed"]
        assert job.status == JobStatus.COMPLETED
        assert job.result["handoff"]["status"] == "triggered"
        assert job.result["records_produced"] == 5

    @pytest.mark.asyncio
    async def test_no_handoff_when_completion_write_fails(self, clock, recording_sleep):
        store = CompletionWriteFailsStore()
        store.seed("posts", make_posts(3))
        handoff = FakeHandoff()
        orchestrator = make_orchestrator(
            store, clock, recording_sleep, stage=self._stage(), handoff=handoff
        )

        job = await run_job(orchestrator)

        assert job.status == JobStatus.FAILED
        assert job.error == "ConnectionError: store hiccup"
        assert handoff.calls == []


class TestRecovery:
    """Reconciliation of jobs left by a previous process"""

    @pytest.mark.asyncio
    async def test_recover(self, store, clock, recording_sleep):
        orchestrator = make_orchestrator(store, clock, recording_sleep)
        rows = [
            JobRecord(id="echo_a", stage="echo", status=JobStatus.PENDING),
            JobRecord(id="echo_b", stage="echo", status=JobStatus.RUNNING),
            JobRecord(id="echo_c", stage="echo", status=JobStatus.PENDING),
            JobRecord(id="echo_d", stage="echo", status=JobStatus.COMPLETED),
        ]
        for n, job in enumerate(rows):
            row = job.to_row()
            row["created_at"] = f"2025-01-0{n + 1}T00:00:00"
            await store.insert_job("echo_jobs", row)

        pending = await orchestrator.recover()

        assert pending == ["echo_a", "echo_c"]
        interrupted = await orchestrator.get_status("echo_b")
        assert interrupted.status == JobStatus.FAILED
        assert interrupted.error.startswith("Interrupted")
        assert (await orchestrator.get_status("echo_d")).status == JobStatus.COMPLETED
