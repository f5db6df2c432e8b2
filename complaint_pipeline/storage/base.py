"""Persistent store interface used by the orchestrator.

The store holds two kinds of rows: work items (e.g. scraped posts) that
stages read in pages and write back to, and one jobs table per stage.
Every write-back is conditional on a "not yet processed" guard column
still being null, so concurrent writers for the same item are idempotent.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

FILTER_OPS = ("eq", "neq", "lt", "lte", "gt", "gte", "is_null", "not_null")


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter op '{self.op}'")


@dataclass
class WorkQuery:
    """Selects the unprocessed work items of one stage."""
    table: str
    guard_column: str
    columns: Sequence[str] = ("*",)
    filters: List[Filter] = field(default_factory=list)
    order_by: List[Tuple[str, bool]] = field(default_factory=list)  # (column, descending)

    def all_filters(self) -> List[Filter]:
        return [Filter(self.guard_column, "is_null")] + list(self.filters)


class PipelineStore(ABC):
    """Abstract store for work items and job records."""

    # -- work items --------------------------------------------------------

    @abstractmethod
    async def fetch_work_items(self, query: WorkQuery, limit: int) -> List[Dict[str, Any]]:
        """Return up to `limit` unprocessed rows in query order."""
        ...

    @abstractmethod
    async def count_work_items(self, query: WorkQuery) -> int:
        ...

    @abstractmethod
    async def write_back(
        self, table: str, item_id: str, fields: Dict[str, Any], guard_column: str
    ) -> bool:
        """Update one item only if `guard_column` is still null.

        Returns True when a row was updated, False when the guard failed
        (the item was already processed) or the item does not exist.
        """
        ...

    # -- jobs --------------------------------------------------------------

    @abstractmethod
    async def insert_job(self, table: str, row: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def update_job(
        self,
        table: str,
        job_id: str,
        fields: Dict[str, Any],
        only_if_status: Optional[Sequence[str]] = None,
    ) -> bool:
        """Update a job row. With `only_if_status`, no-ops unless the current
        status is one of the given values. Returns True when a row changed."""
        ...

    @abstractmethod
    async def get_job(self, table: str, job_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def list_jobs(
        self,
        table: str,
        statuses: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Most recent jobs first."""
        ...

    def maintain(self) -> None:
        """Periodic housekeeping, e.g. evicting stale pooled connections."""
