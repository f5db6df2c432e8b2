"""Supabase-backed store. Every request borrows a client from the pool."""

import logging
from typing import Any, Dict, List, Optional, Sequence

from postgrest.exceptions import APIError

from complaint_pipeline.db.connection_pool import ConnectionPool
from complaint_pipeline.errors import StoreError
from complaint_pipeline.storage.base import Filter, PipelineStore, WorkQuery

logger = logging.getLogger(__name__)


def _apply_filter(builder, flt: Filter):
    if flt.op == "is_null":
        return builder.is_(flt.column, "null")
    if flt.op == "not_null":
        return builder.not_.is_(flt.column, "null")
    return getattr(builder, flt.op)(flt.column, flt.value)


class SupabaseStore(PipelineStore):

    def __init__(self, pool: ConnectionPool):
        self._pool = pool

    async def _run(self, description: str, build):
        """Execute a query built by `build(client)` on a pooled client."""
        async with self._pool.connection() as client:
            try:
                return await build(client).execute()
            except APIError as e:
                logger.error("Supabase %s failed: %s", description, e.message)
                raise StoreError(f"{description} failed: {e.message}") from e

    # -- work items --------------------------------------------------------

    def _work_builder(self, client, query: WorkQuery, **select_kwargs):
        builder = client.table(query.table).select(",".join(query.columns), **select_kwargs)
        for flt in query.all_filters():
            builder = _apply_filter(builder, flt)
        return builder

    async def fetch_work_items(self, query: WorkQuery, limit: int) -> List[Dict[str, Any]]:
        def build(client):
            builder = self._work_builder(client, query)
            for column, descending in query.order_by:
                builder = builder.order(column, desc=descending)
            return builder.limit(limit)

        response = await self._run(f"fetch from {query.table}", build)
        return response.data or []

    async def count_work_items(self, query: WorkQuery) -> int:
        response = await self._run(
            f"count {query.table}",
            lambda client: self._work_builder(client, query, count="exact", head=True),
        )
        return response.count or 0

    async def write_back(
        self, table: str, item_id: str, fields: Dict[str, Any], guard_column: str
    ) -> bool:
        response = await self._run(
            f"write back {table}/{item_id}",
            lambda client: client.table(table)
            .update(fields)
            .eq("id", item_id)
            .is_(guard_column, "null"),
        )
        return bool(response.data)

    # -- jobs --------------------------------------------------------------

    async def insert_job(self, table: str, row: Dict[str, Any]) -> None:
        await self._run(
            f"insert into {table}",
            lambda client: client.table(table).insert(row),
        )

    async def update_job(
        self,
        table: str,
        job_id: str,
        fields: Dict[str, Any],
        only_if_status: Optional[Sequence[str]] = None,
    ) -> bool:
        def build(client):
            builder = client.table(table).update(fields).eq("id", job_id)
            if only_if_status is not None:
                builder = builder.in_("status", list(only_if_status))
            return builder

        response = await self._run(f"update {table}/{job_id}", build)
        return bool(response.data)

    async def get_job(self, table: str, job_id: str) -> Optional[Dict[str, Any]]:
        response = await self._run(
            f"read {table}/{job_id}",
            lambda client: client.table(table).select("*").eq("id", job_id).limit(1),
        )
        return response.data[0] if response.data else None

    async def list_jobs(
        self,
        table: str,
        statuses: Optional[Sequence[str]] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        def build(client):
            builder = client.table(table).select("*")
            if statuses is not None:
                builder = builder.in_("status", list(statuses))
            return builder.order("created_at", desc=True).limit(limit)

        response = await self._run(f"list {table}", build)
        return response.data or []

    def maintain(self) -> None:
        self._pool.cleanup()
