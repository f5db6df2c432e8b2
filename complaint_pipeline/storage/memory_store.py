"""In-process store for local development and tests.

Same contract as the Supabase store, rows held in dicts. Nothing survives
a restart.
"""

import copy
from typing import Any, Dict, Iterable, List, Optional, Sequence

from complaint_pipeline.storage.base import Filter, PipelineStore, WorkQuery


def _matches(row: Dict[str, Any], flt: Filter) -> bool:
    value = row.get(flt.column)
    if flt.op == "is_null":
        return value is None
    if flt.op == "not_null":
        return value is not None
    if flt.op == "eq":
        return value == flt.value
    if flt.op == "neq":
        return value != flt.value
    if value is None:
        return False
    if flt.op == "lt":
        return value < flt.value
    if flt.op == "lte":
        return value <= flt.value
    if flt.op == "gt":
        return value > flt.value
    return value >= flt.value


def _sorted(rows: List[Dict[str, Any]], order_by) -> List[Dict[str, Any]]:
    # Stable sorts applied last key first; nulls always sort last.
    for column, descending in reversed(order_by):
        present = [r for r in rows if r.get(column) is not None]
        missing = [r for r in rows if r.get(column) is None]
        present.sort(key=lambda r: r[column], reverse=descending)
        rows = present + missing
    return rows


class InMemoryStore(PipelineStore):

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _table(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(name, {})

    def seed(self, table: str, rows: Iterable[Dict[str, Any]]) -> None:
        tbl = self._table(table)
        for row in rows:
            tbl[str(row["id"])] = dict(row)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._table(table).values()]

    def get_row(self, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        row = self._table(table).get(str(row_id))
        return copy.deepcopy(row) if row is not None else None

    # -- work items --------------------------------------------------------

    def _select(self, query: WorkQuery) -> List[Dict[str, Any]]:
        filters = query.all_filters()
        rows = [
            r for r in self._table(query.table).values()
            if all(_matches(r, f) for f in filters)
        ]
        return _sorted(rows, query.order_by)

    async def fetch_work_items(self, query: WorkQuery, limit: int) -> List[Dict[str, Any]]:
        rows = self._select(query)[:limit]
        if "*" not in query.columns:
            rows = [{c: r.get(c) for c in query.columns} for r in rows]
        return copy.deepcopy(rows)

    async def count_work_items(self, query: WorkQuery) -> int:
        return len(self._select(query))

    async def write_back(
        self, table: str, item_id: str, fields: Dict[str, Any], guard_column: str
    ) -> bool:
        row = self._table(table).get(str(item_id))
        if row is None or row.get(guard_column) is not None:
            return False
        row.update(copy.deepcopy(fields))
        return True

    # -- jobs --------------------------------------------------------------

    async def insert_job(self, table: str, row: Dict[str, Any]) -> None:
        tbl = self._table(table)
        if row["id"] in tbl:
            raise ValueError(f"Duplicate job id {row['id']}")
        tbl[row["id"]] = copy.deepcopy(row)

    async def update_job(
        self,
        table: str,
        job_id: str,
        fields: Dict[str, Any],
        only_if_status: Optional[Sequence[str]] = None,
    ) -> bool:
        row = self._table(table).get(job_id)
        if row is None:
            return False
        if only_if_status is not None and row.get("status") not in only_if_status:
            return False
        row.update(copy.deepcopy(fields))
        return True

    async def get_job(self, table: str, job_id: str) -> Optional[Dict[str, Any]]:
        return self.get_row(table, job_id)

    async def list_jobs(
        self,
        table: str,
        statuses: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        rows = [
            r for r in self._table(table).values()
            if statuses is None or r.get("status") in statuses
        ]
        rows = _sorted(rows, [("created_at", True)])
        return copy.deepcopy(rows[:limit])
