"""Bounded pool of reusable downstream-store client handles."""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class PooledHandle:
    client: Any
    created_at: float
    last_used: float
    in_use: bool = False


class ConnectionPool:
    """Hands out at most `capacity` client handles.

    - acquire() reuses an idle handle younger than `max_age`, otherwise
      creates one if there is room, otherwise polls until a handle frees.
    - A handle that is in use is never evicted or given to a second caller.
    """

    def __init__(
        self,
        factory: Callable[[], Awaitable[Any]],
        capacity: int = 5,
        max_age: float = 300.0,
        poll_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        closer: Optional[Callable[[Any], Any]] = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._factory = factory
        self._capacity = capacity
        self._max_age = max_age
        self._poll_interval = poll_interval
        self._clock = clock
        self._handles: List[PooledHandle] = []
        self._creating = 0
        self._closer = closer
        self._closing: Set[asyncio.Task] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    def size(self) -> int:
        return len(self._handles) + self._creating

    def in_use_count(self) -> int:
        return sum(1 for h in self._handles if h.in_use)

    async def acquire(self, timeout: Optional[float] = None) -> Any:
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            client = self._try_take_idle()
            if client is not None:
                return client

            if self.size() < self._capacity:
                return await self._create()

            if deadline is not None and self._clock() >= deadline:
                raise TimeoutError(
                    f"No connection available after {timeout:.1f}s "
                    f"({self._capacity} in use)"
                )
            await asyncio.sleep(self._poll_interval)

    def release(self, client: Any) -> None:
        for handle in self._handles:
            if handle.client is client:
                handle.in_use = False
                handle.last_used = self._clock()
                return
        logger.warning("Released a client that does not belong to this pool")

    def cleanup(self) -> int:
        """Evict idle handles older than max_age. Returns how many were evicted."""
        now = self._clock()
        stale = [
            h for h in self._handles
            if not h.in_use and now - h.created_at >= self._max_age
        ]
        self._handles = [h for h in self._handles if h not in stale]
        for handle in stale:
            self._close(handle.client)
        evicted = len(stale)
        if evicted:
            logger.debug("Evicted %d stale connection(s)", evicted)
        return evicted

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[Any]:
        client = await self.acquire()
        try:
            yield client
        finally:
            self.release(client)

    def _try_take_idle(self) -> Any:
        now = self._clock()
        for handle in list(self._handles):
            if handle.in_use:
                continue
            if now - handle.created_at >= self._max_age:
                self._handles.remove(handle)
                self._close(handle.client)
                continue
            handle.in_use = True
            handle.last_used = now
            return handle.client
        return None

    async def _create(self) -> Any:
        # Reserve the slot before awaiting so concurrent acquirers see it.
        self._creating += 1
        try:
            client = await self._factory()
        finally:
            self._creating -= 1
        now = self._clock()
        self._handles.append(
            PooledHandle(client=client, created_at=now, last_used=now, in_use=True)
        )
        return client

    def _close(self, client: Any) -> None:
        if self._closer is None:
            return
        try:
            closing = self._closer(client)
        except Exception as e:
            logger.warning("Closing evicted connection failed: %s", e)
            return
        if asyncio.iscoroutine(closing):
            task = asyncio.get_running_loop().create_task(closing)
            self._closing.add(task)
            task.add_done_callback(self._closed)

    def _closed(self, task: asyncio.Task) -> None:
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Closing evicted connection failed: %s", task.exception())
