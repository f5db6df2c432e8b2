"""Test doubles shared across test modules."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

from complaint_pipeline.errors import PermanentInferenceError
from complaint_pipeline.jobs.dispatcher import JobDispatcher
from complaint_pipeline.jobs.models import WorkItem
from complaint_pipeline.stages.base import PipelineStage, StageParameters


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and advances a clock."""

    def __init__(self, clock: FakeClock = None):
        self.delays: List[float] = []
        self._clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._clock is not None:
            self._clock.advance(seconds)


class EchoStage(PipelineStage):
    """Minimal stage: 'inference' uppercases the title, fallback lowercases it."""

    name = "echo"
    jobs_table = "echo_jobs"
    work_table = "posts"
    guard_column = "processed_at"
    next_stage = None

    def __init__(self, fail_ids=(), error_factory=None, on_call=None):
        self.fail_ids = set(fail_ids)
        self.error_factory = error_factory or (lambda: PermanentInferenceError("bad input"))
        self.on_call = on_call
        self.calls: List[str] = []

    async def process(self, item: WorkItem, params: StageParameters) -> Dict[str, Any]:
        self.calls.append(item.id)
        if self.on_call is not None:
            self.on_call(item)
        if item.id in self.fail_ids:
            raise self.error_factory()
        return {"result": item.title.upper(), "processed_at": "now", "mode": "ai"}

    def fallback(self, item: WorkItem, params: StageParameters) -> Dict[str, Any]:
        return {"result": item.title.lower(), "processed_at": "now", "mode": "fallback"}


def make_posts(count: int, prefix: str = "p", **fields) -> List[Dict[str, Any]]:
    base = datetime(2025, 1, 10, tzinfo=timezone.utc)
    return [
        {
            "id": f"{prefix}{n}",
            "title": f"Post {n}",
            "body": "short body",
            "platform": "reddit",
            "created_at": (base - timedelta(hours=n)).isoformat(),
            "processed_at": None,
            **fields,
        }
        for n in range(count)
    ]




class RecordingDispatcher(JobDispatcher):
    """Dispatcher that only remembers what was submitted."""

    def __init__(self):
        self.submitted: List[Tuple[str, str]] = []

    async def submit(self, stage: str, job_id: str) -> None:
        self.submitted.append((stage, job_id))

    def pending_count(self) -> int:
        return len(self.submitted)

    async def start(self) -> None:
        pass

    async def stop(self) -> None:
        pass
