"""Stage strategy interface.

The orchestrator is generic; everything stage-specific (which items to
pick up, what inference call to make, what to write back, what to fall
back to) lives in a PipelineStage implementation.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, Field

from complaint_pipeline.config import settings
from complaint_pipeline.jobs.models import WorkItem
from complaint_pipeline.storage.base import Filter, WorkQuery


class StageParameters(BaseModel):
    """Parameters every stage accepts. Read-only once the job exists."""
    page_size: int = Field(30, ge=1, le=1000)
    max_items_per_run: int = Field(200, ge=1, le=100_000)
    concurrency: int = Field(2, ge=1, le=15)
    max_processing_seconds: float = Field(12 * 60, gt=0, le=6 * 60 * 60)
    inter_batch_delay_seconds: float = Field(3.0, ge=0, le=300)
    complex_batch_size: int = Field(5, ge=1, le=500)
    medium_batch_size: int = Field(10, ge=1, le=500)
    simple_batch_size: int = Field(15, ge=1, le=500)
    platform: str = "all"
    handoff: bool = True
    triggered_by: str = "api"
    source_job_id: Optional[str] = None

    model_config = {"extra": "ignore"}


class PipelineStage(ABC):
    name: str
    jobs_table: str
    work_table: str = settings.work_items_table
    guard_column: str
    columns: tuple = ("*",)
    parameters_model: Type[StageParameters] = StageParameters
    next_stage: Optional[str] = None

    def parse_parameters(self, raw: Optional[Dict[str, Any]]) -> StageParameters:
        return self.parameters_model.model_validate(raw or {})

    def work_query(self, params: StageParameters) -> WorkQuery:
        filters = list(self.extra_filters(params))
        if params.platform and params.platform != "all":
            filters.append(Filter("platform", "eq", params.platform))
        return WorkQuery(
            table=self.work_table,
            guard_column=self.guard_column,
            columns=self.columns,
            filters=filters,
            order_by=list(self.order_by(params)),
        )

    def extra_filters(self, params: StageParameters):
        return []

    def order_by(self, params: StageParameters):
        return [("created_at", True)]

    @abstractmethod
    async def process(self, item: WorkItem, params: StageParameters) -> Dict[str, Any]:
        """Run the inference call(s) for one item and return the fields to
        write back, including a value for the guard column. Raises
        InferenceError subclasses on failure."""
        ...

    @abstractmethod
    def fallback(self, item: WorkItem, params: StageParameters) -> Dict[str, Any]:
        """Deterministic local substitute for process()."""
        ...

    def handoff_parameters(self, params: StageParameters) -> Dict[str, Any]:
        """Parameters the next stage inherits."""
        return params.model_dump(
            include={"platform", "concurrency", "max_processing_seconds", "handoff"}
        )
