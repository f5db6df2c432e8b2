"""Summarization stage: one short summary per negative complaint."""

from datetime import datetime
from typing import Any, Dict

from pydantic import Field

from complaint_pipeline.inference.client import InferenceClient
from complaint_pipeline.jobs.models import WorkItem
from complaint_pipeline.stages.base import PipelineStage, StageParameters
from complaint_pipeline.storage.base import Filter

SUMMARY_COMPLAINT_TERMS = (
    "frustrat", "annoying", "broken", "terrible", "awful", "worst", "hate",
    "slow", "bug", "crash", "error", "fail", "problem", "issue",
)
EXCERPT_CHARS = 200


def fallback_summary(text: str) -> str:
    text = text.strip()
    lowered = text.lower()
    found = [term for term in SUMMARY_COMPLAINT_TERMS if term in lowered][:3]
    if found:
        summary = f"Users report issues with {', '.join(found)}-related problems"
    else:
        summary = "User complaint about product/service experience"
    if text:
        excerpt = text[:EXCERPT_CHARS]
        ellipsis = "..." if len(text) > EXCERPT_CHARS else ""
        summary += f": {excerpt}{ellipsis}"
    return summary


class SummarizeParameters(StageParameters):
    page_size: int = Field(24, ge=1, le=1000)
    max_items_per_run: int = Field(100, ge=1, le=100_000)
    complex_batch_size: int = Field(4, ge=1, le=500)
    medium_batch_size: int = Field(8, ge=1, le=500)
    simple_batch_size: int = Field(12, ge=1, le=500)
    sentiment_threshold: float = Field(-0.1, ge=-1.0, le=1.0)


class SummarizeStage(PipelineStage):
    name = "summarize"
    jobs_table = "summary_jobs"
    guard_column = "summary"
    columns = ("id", "title", "body", "url", "platform", "sentiment", "is_complaint", "created_at")
    parameters_model = SummarizeParameters
    next_stage = "ideas"

    def __init__(self, inference: InferenceClient):
        self.inference = inference

    def extra_filters(self, params: SummarizeParameters):
        return [
            Filter("is_complaint", "eq", True),
            Filter("sentiment", "lt", params.sentiment_threshold),
        ]

    def order_by(self, params: SummarizeParameters):
        return [("sentiment", False), ("created_at", True)]

    async def process(self, item: WorkItem, params: SummarizeParameters) -> Dict[str, Any]:
        summary = await self.inference.summarize(item.text)
        return self._fields(summary, "completed")

    def fallback(self, item: WorkItem, params: SummarizeParameters) -> Dict[str, Any]:
        return self._fields(fallback_summary(item.text), "fallback")

    @staticmethod
    def _fields(summary: str, status: str) -> Dict[str, Any]:
        return {
            "summary": summary,
            "summary_status": status,
            "summarized_at": datetime.utcnow().isoformat(),
        }

    def handoff_parameters(self, params: SummarizeParameters) -> Dict[str, Any]:
        inherited = super().handoff_parameters(params)
        inherited["sentiment_threshold"] = params.sentiment_threshold
        return inherited
