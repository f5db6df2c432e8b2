"""Retry, backoff and circuit-breaker gating around one inference call."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from complaint_pipeline.errors import (
    PermanentInferenceError,
    RateLimitedError,
    TransientServerError,
)
from complaint_pipeline.resilience.reliability import ReliabilityTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    rate_limit_cooldown: float = 60.0
    backoff_base: float = 1.0
    backoff_cap: float = 30.0

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based) of a transient error."""
        return min(self.backoff_base * 2 ** (attempt - 1), self.backoff_cap)


@dataclass
class CallOutcome(Generic[R]):
    value: R
    used_fallback: bool
    attempts: int
    reason: Optional[str] = None


class ResilientCallExecutor:
    """Runs `call(item)` under a retry policy, never raising to the caller.

    Whatever goes wrong, the caller gets either the call's result or
    `fallback(item)`, so one bad item cannot abort its batch.
    """

    def __init__(
        self,
        tracker: ReliabilityTracker,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.tracker = tracker
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def execute(
        self,
        item: T,
        call: Callable[[T], Awaitable[R]],
        fallback: Callable[[T], R],
    ) -> CallOutcome[R]:
        if not self.tracker.allow_request():
            reason = "circuit_open" if self.tracker.circuit_open else "fallback_mode"
            return self._fallback(item, fallback, attempts=0, reason=reason)

        try:
            return await self._attempt(item, call, fallback)
        except asyncio.CancelledError:
            self.tracker.release_probe()
            raise

    async def _attempt(
        self,
        item: T,
        call: Callable[[T], Awaitable[R]],
        fallback: Callable[[T], R],
    ) -> CallOutcome[R]:
        policy = self.policy
        reason = "retries_exhausted"
        attempt = 0
        while attempt < policy.max_attempts:
            attempt += 1
            try:
                value = await call(item)
            except RateLimitedError as e:
                self.tracker.record_rate_limit()
                logger.warning(
                    "Rate limited (attempt %d/%d): %s", attempt, policy.max_attempts, e
                )
                if attempt < policy.max_attempts:
                    await self._sleep(policy.rate_limit_cooldown)
                continue
            except TransientServerError as e:
                logger.warning(
                    "Transient inference error (attempt %d/%d): %s",
                    attempt, policy.max_attempts, e,
                )
                if attempt < policy.max_attempts:
                    await self._sleep(policy.backoff_delay(attempt))
                continue
            except PermanentInferenceError as e:
                logger.warning("Non-retryable inference error: %s", e)
                reason = "permanent_error"
                break
            except Exception as e:
                logger.exception("Unexpected error in inference call: %s", e)
                reason = "unexpected_error"
                break
            else:
                self.tracker.record_success()
                return CallOutcome(value=value, used_fallback=False, attempts=attempt)

        self.tracker.record_failure()
        return self._fallback(item, fallback, attempts=attempt, reason=reason)

    @staticmethod
    def _fallback(item, fallback, attempts: int, reason: str) -> CallOutcome:
        return CallOutcome(
            value=fallback(item), used_fallback=True, attempts=attempts, reason=reason
        )
