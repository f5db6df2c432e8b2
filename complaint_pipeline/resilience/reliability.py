"""Circuit breaker and failure-ratio tracking for one external dependency.

One tracker belongs to one orchestrator, so independent pipelines keep
isolated breaker state. Counters live for the lifetime of the tracker and
are never persisted.

State machine of the breaker:

    closed --(consecutive failures >= threshold)--> open
    open --(cooldown elapsed since last failure)--> half-open (one probe)
    half-open --probe succeeds--> closed
    half-open --probe fails--> open

Fallback mode is entered when the rolling failure ratio crosses a second
threshold. While it is on, the tracker behaves as if the breaker were open:
calls are skipped except for one probe per cooldown. A successful probe
turns it off again once the ratio has dropped back under the threshold.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)


@dataclass
class ReliabilityState:
    total_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    rate_limit_hits: int = 0
    skipped_requests: int = 0
    last_failure_at: float = 0.0
    circuit_open: bool = False
    fallback_mode: bool = False
    probe_in_flight: bool = False

    @property
    def failure_ratio(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests


class ReliabilityTracker:
    """Decides whether a call to the dependency should be attempted."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        fallback_ratio: float = 0.7,
        fallback_min_requests: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.fallback_ratio = fallback_ratio
        self.fallback_min_requests = fallback_min_requests
        self._clock = clock
        self.state = ReliabilityState()

    @property
    def circuit_open(self) -> bool:
        return self.state.circuit_open

    @property
    def fallback_mode(self) -> bool:
        return self.state.fallback_mode

    def allow_request(self) -> bool:
        """Return True when a network call may be attempted now.

        Also counts the call towards the failure ratio, so callers must
        report the outcome with record_success() or record_failure().
        """
        s = self.state
        if s.circuit_open or s.fallback_mode:
            if self._clock() - s.last_failure_at < self.cooldown_seconds:
                s.skipped_requests += 1
                return False
            if s.probe_in_flight:
                s.skipped_requests += 1
                return False
            s.probe_in_flight = True
            logger.info("%s: cooldown elapsed, allowing one probe request", self.name)

        s.total_requests += 1
        return True

    def record_success(self) -> None:
        s = self.state
        s.consecutive_failures = 0
        if s.probe_in_flight:
            s.probe_in_flight = False
            if s.circuit_open:
                s.circuit_open = False
                logger.info("%s: probe succeeded, circuit closed", self.name)
        if s.fallback_mode and s.failure_ratio < self.fallback_ratio:
            s.fallback_mode = False
            logger.info(
                "%s: failure ratio down to %.1f%%, leaving fallback mode",
                self.name, s.failure_ratio * 100,
            )

    def record_failure(self) -> None:
        s = self.state
        s.failed_requests += 1
        s.consecutive_failures += 1
        s.last_failure_at = self._clock()
        s.probe_in_flight = False

        if s.consecutive_failures >= self.failure_threshold:
            if not s.circuit_open:
                logger.error(
                    "%s: circuit opened after %d consecutive failures",
                    self.name, s.consecutive_failures,
                )
            s.circuit_open = True

        if (
            not s.fallback_mode
            and s.total_requests >= self.fallback_min_requests
            and s.failure_ratio >= self.fallback_ratio
        ):
            s.fallback_mode = True
            logger.warning(
                "%s: entering fallback mode, failure ratio %.1f%%",
                self.name, s.failure_ratio * 100,
            )

    def release_probe(self) -> None:
        """Give back the half-open slot of a call that ended without an outcome."""
        if self.state.probe_in_flight:
            self.state.probe_in_flight = False
            logger.info("%s: probe request abandoned", self.name)

    def record_rate_limit(self) -> None:
        self.state.rate_limit_hits += 1

    def reset(self) -> None:
        self.state = ReliabilityState()

    def snapshot(self) -> Dict[str, Any]:
        s = self.state
        return {
            "name": self.name,
            "total_requests": s.total_requests,
            "failed_requests": s.failed_requests,
            "consecutive_failures": s.consecutive_failures,
            "rate_limit_hits": s.rate_limit_hits,
            "skipped_requests": s.skipped_requests,
            "failure_ratio": round(s.failure_ratio, 3),
            "circuit_open": s.circuit_open,
            "fallback_mode": s.fallback_mode,
        }
