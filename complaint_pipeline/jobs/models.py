"""Job and work item data models for async stage processing."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
import uuid


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


def new_job_id(stage: str) -> str:
    return f"{stage}_{uuid.uuid4().hex}"


class JobProgress(BaseModel):
    """Snapshot overwritten on every progress update."""
    current_step: str = "Queued"
    posts_processed: int = 0
    posts_total: int = 0
    current_batch: int = 0
    total_batches: int = 0
    posts_success: int = 0
    posts_failed: int = 0
    posts_fallback: int = 0
    posts_skipped: int = 0
    pages_fetched: int = 0


class JobRecord(BaseModel):
    """Tracks the lifecycle of one run of one pipeline stage."""
    id: str
    stage: str
    status: JobStatus = JobStatus.PENDING
    parameters: Dict[str, Any] = Field(default_factory=dict)
    progress: JobProgress = Field(default_factory=JobProgress)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_row(self) -> Dict[str, Any]:
        """Serialize for the jobs table. The stage is implied by the table."""
        return self.model_dump(mode="json", exclude={"stage"})

    @classmethod
    def from_row(cls, stage: str, row: Dict[str, Any]) -> "JobRecord":
        data = dict(row)
        data["stage"] = stage
        if data.get("progress") is None:
            data["progress"] = {}
        if data.get("parameters") is None:
            data["parameters"] = {}
        return cls.model_validate(data)


class WorkItem(BaseModel):
    """One record awaiting processing by a stage (usually a scraped post)."""
    id: str
    title: Optional[str] = ""
    body: Optional[str] = ""
    platform: Optional[str] = None
    url: Optional[str] = None
    created_at: Optional[datetime] = None
    sentiment: Optional[float] = None
    is_complaint: Optional[bool] = None
    keywords: Optional[List[str]] = None
    summary: Optional[str] = None

    model_config = {"extra": "allow"}

    @property
    def text(self) -> str:
        return f"{self.title or ''}\n{self.body or ''}".strip()

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WorkItem":
        data = dict(row)
        data["id"] = str(data["id"])
        return cls.model_validate(data)
