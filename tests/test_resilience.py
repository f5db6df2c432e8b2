import asyncio

import pytest

from complaint_pipeline.errors import (
    PermanentInferenceError,
    RateLimitedError,
    TransientServerError,
)
from complaint_pipeline.resilience.executor import ResilientCallExecutor, RetryPolicy
from complaint_pipeline.resilience.rate_limiter import RateLimiter
from complaint_pipeline.resilience.reliability import ReliabilityTracker
from helpers import FakeClock, RecordingSleep


class ScriptedCall:
    """Async callable that raises the scripted errors in order, then succeeds."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self, item):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def always(error_factory):
    class Failing(ScriptedCall):
        async def __call__(self, item):
            self.calls += 1
            raise error_factory()
    return Failing()


def fallback(item):
    return f"fallback:{item}"


class TestRateLimiter:
    """Fixed-window trigger protection"""

    def test_allows_up_to_limit_then_denies(self):
        clock = FakeClock()
        limiter = RateLimiter(limit=3, window_seconds=60, clock=clock)

        decisions = [limiter.check("1.2.3.4") for _ in range(3)]
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

        clock.advance(20)
        denied = limiter.check("1.2.3.4")
        assert not denied.allowed
        assert denied.retry_after == pytest.approx(40)

    def test_keys_are_independent(self):
        limiter = RateLimiter(limit=1, window_seconds=60, clock=FakeClock())

        assert limiter.check("a").allowed
        assert not limiter.check("a").allowed
        assert limiter.check("b").allowed

    def test_new_window_after_expiry(self):
        clock = FakeClock()
        limiter = RateLimiter(limit=1, window_seconds=60, clock=clock)
        limiter.check("a")
        assert not limiter.check("a").allowed

        clock.advance(60)
        assert limiter.check("a").allowed

    def test_expired_windows_are_evicted(self):
        clock = FakeClock()
        limiter = RateLimiter(limit=5, window_seconds=10, clock=clock)
        limiter.check("a")
        limiter.check("b")
        assert len(limiter) == 2

        clock.advance(11)
        limiter.check("c")
        assert len(limiter) == 1

    def test_reset(self):
        limiter = RateLimiter(limit=1, window_seconds=60, clock=FakeClock())
        limiter.check("a")
        limiter.reset("a")
        assert limiter.check("a").allowed

    def test_rejects_bad_configuration(self):
        with pytest.raises(ValueError):
            RateLimiter(limit=0, window_seconds=60)
        with pytest.raises(ValueError):
            RateLimiter(limit=1, window_seconds=0)


class TestReliabilityTracker:
    """Circuit breaker and fallback mode"""

    def _fail(self, tracker, times):
        for _ in range(times):
            assert tracker.allow_request()
            tracker.record_failure()

    def test_opens_after_consecutive_failures(self):
        tracker = ReliabilityTracker("test", failure_threshold=3, clock=FakeClock())
        self._fail(tracker, 2)
        assert not tracker.circuit_open

        self._fail(tracker, 1)
        assert tracker.circuit_open
        assert not tracker.allow_request()
        assert tracker.state.skipped_requests == 1

    def test_success_resets_consecutive_count(self):
        tracker = ReliabilityTracker("test", failure_threshold=3, clock=FakeClock())
        self._fail(tracker, 2)
        tracker.allow_request()
        tracker.record_success()
        self._fail(tracker, 2)

        assert not tracker.circuit_open
        assert tracker.state.consecutive_failures == 2

    def test_single_probe_after_cooldown(self):
        clock = FakeClock()
        tracker = ReliabilityTracker(
            "test", failure_threshold=2, cooldown_seconds=60, clock=clock
        )
        self._fail(tracker, 2)

        clock.advance(59)
        assert not tracker.allow_request()

        clock.advance(1)
        assert tracker.allow_request()
        # Only one probe at a time while half-open.
        assert not tracker.allow_request()

        tracker.record_success()
        assert not tracker.circuit_open
        assert tracker.allow_request()

    def test_failed_probe_reopens(self):
        clock = FakeClock()
        tracker = ReliabilityTracker(
            "test", failure_threshold=2, cooldown_seconds=60, clock=clock
        )
        self._fail(tracker, 2)
        clock.advance(60)

        assert tracker.allow_request()
        tracker.record_failure()

        assert tracker.circuit_open
        assert not tracker.allow_request()

    def test_fallback_mode_on_failure_ratio(self):
        clock = FakeClock()
        tracker = ReliabilityTracker(
            "test",
            failure_threshold=100,
            cooldown_seconds=30,
            fallback_ratio=0.7,
            fallback_min_requests=10,
            clock=clock,
        )
        for _ in range(3):
            tracker.allow_request()
            tracker.record_success()
        self._fail(tracker, 6)
        assert not tracker.fallback_mode

        self._fail(tracker, 1)
        assert tracker.fallback_mode
        assert not tracker.circuit_open
        assert not tracker.allow_request()

        clock.advance(30)
        assert tracker.allow_request()
        tracker.record_success()
        # 7 failures out of 11 requests is under the 70% threshold
        assert not tracker.fallback_mode

    def test_snapshot(self):
        tracker = ReliabilityTracker("enrich-inference", clock=FakeClock())
        tracker.allow_request()
        tracker.record_failure()
        tracker.record_rate_limit()

        snap = tracker.snapshot()
        assert snap["name"] == "enrich-inference"
        assert snap["total_requests"] == 1
        assert snap["failed_requests"] == 1
        assert snap["rate_limit_hits"] == 1
        assert snap["failure_ratio"] == 1.0
        assert snap["circuit_open"] is False

        tracker.reset()
        assert tracker.snapshot()["total_requests"] == 0


class TestResilientCallExecutor:
    """Retry policy around a single inference call"""

    def _executor(self, tracker=None, **policy):
        sleep = RecordingSleep()
        tracker = tracker or ReliabilityTracker("test", clock=FakeClock())
        return ResilientCallExecutor(tracker, RetryPolicy(**policy), sleep=sleep), sleep

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        executor, sleep = self._executor()
        call = ScriptedCall(result=42)

        outcome = await executor.execute("item", call, fallback)

        assert outcome.value == 42
        assert not outcome.used_fallback
        assert outcome.attempts == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_transient_errors_back_off_exponentially(self):
        executor, sleep = self._executor(max_attempts=3, backoff_base=1, backoff_cap=30)
        call = always(lambda: TransientServerError("503", status_code=503))

        outcome = await executor.execute("item", call, fallback)

        assert call.calls == 3
        assert sleep.delays == [1, 2]
        assert outcome.used_fallback
        assert outcome.value == "fallback:item"
        assert outcome.reason == "retries_exhausted"
        assert executor.tracker.state.failed_requests == 1

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self):
        executor, sleep = self._executor(max_attempts=4, backoff_base=10, backoff_cap=15)
        call = always(lambda: TransientServerError("timeout"))

        await executor.execute("item", call, fallback)

        assert sleep.delays == [10, 15, 15]

    @pytest.mark.asyncio
    async def test_rate_limit_waits_cooldown_then_succeeds(self):
        executor, sleep = self._executor(rate_limit_cooldown=60)
        call = ScriptedCall(RateLimitedError("slow down", status_code=429), result="done")

        outcome = await executor.execute("item", call, fallback)

        assert outcome.value == "done"
        assert outcome.attempts == 2
        assert sleep.delays == [60]
        assert executor.tracker.state.rate_limit_hits == 1
        assert executor.tracker.state.failed_requests == 0

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self):
        executor, sleep = self._executor()
        call = always(lambda: PermanentInferenceError("400", status_code=400))

        outcome = await executor.execute("item", call, fallback)

        assert call.calls == 1
        assert sleep.delays == []
        assert outcome.used_fallback
        assert outcome.reason == "permanent_error"

    @pytest.mark.asyncio
    async def test_unexpected_error_falls_back(self):
        executor, _ = self._executor()
        call = always(lambda: KeyError("sentiment_score"))

        outcome = await executor.execute("item", call, fallback)

        assert call.calls == 1
        assert outcome.used_fallback
        assert outcome.reason == "unexpected_error"

    @pytest.mark.asyncio
    async def test_open_circuit_skips_network_call(self):
        tracker = ReliabilityTracker("test", failure_threshold=5, clock=FakeClock())
        executor, _ = self._executor(tracker=tracker)
        call = always(lambda: PermanentInferenceError("bad"))

        for _ in range(5):
            await executor.execute("item", call, fallback)
        assert tracker.circuit_open
        assert call.calls == 5

        outcome = await executor.execute("item", call, fallback)

        assert call.calls == 5
        assert outcome.used_fallback
        assert outcome.attempts == 0
        assert outcome.reason == "circuit_open"

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_half_open_slot(self):
        clock = FakeClock()
        tracker = ReliabilityTracker(
            "test", failure_threshold=1, cooldown_seconds=60, clock=clock
        )
        tracker.allow_request()
        tracker.record_failure()
        clock.advance(60)
        executor, _ = self._executor(tracker=tracker)
        started = asyncio.Event()

        async def hang(item):
            started.set()
            await asyncio.Event().wait()

        task = asyncio.create_task(executor.execute("item", hang, fallback))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not tracker.state.probe_in_flight
        assert tracker.circuit_open
        assert tracker.allow_request()

    def test_backoff_delay(self):
        policy = RetryPolicy(backoff_base=2, backoff_cap=10)
        assert [policy.backoff_delay(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 10]
