"""Fixed-window request counter keyed by caller identity.

Protects the stage trigger endpoints from being re-triggered faster than a
stage can drain its backlog. It has nothing to do with the downstream
inference dependency; that is the reliability tracker's job.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: float = 0.0


@dataclass
class _Window:
    count: int
    started_at: float


class RateLimiter:
    """Allows at most `limit` requests per caller within each window."""

    def __init__(
        self,
        limit: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    @property
    def limit(self) -> int:
        return self._limit

    def check(self, key: str) -> RateLimitDecision:
        """Count one request for `key` and say whether it may proceed."""
        now = self._clock()
        self._evict_expired(now)

        window = self._windows.get(key)
        if window is None or now - window.started_at >= self._window:
            self._windows[key] = _Window(count=1, started_at=now)
            return RateLimitDecision(allowed=True, remaining=self._limit - 1)

        if window.count >= self._limit:
            retry_after = self._window - (now - window.started_at)
            return RateLimitDecision(allowed=False, remaining=0, retry_after=retry_after)

        window.count += 1
        return RateLimitDecision(allowed=True, remaining=self._limit - window.count)

    def reset(self, key: str = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if now - w.started_at >= self._window]
        for k in expired:
            del self._windows[k]

    def __len__(self) -> int:
        return len(self._windows)
