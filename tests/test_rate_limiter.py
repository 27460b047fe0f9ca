"""
Tests for per-provider scheduling.

Tests cover:
- Minimum spacing between dispatches to one provider
- Independence between providers
- Retry with exponential backoff, ahead of later work
- Circuit breaker tripping, rejection and recovery
- Queue statistics
"""

import asyncio
import time

import pytest

from sentinel_dispatch.circuit_breaker import CircuitState
from sentinel_dispatch.config import ProviderConfig
from sentinel_dispatch.errors import CircuitOpenError, TransientProviderError

# Timer granularity allowance for wall-clock assertions
EPSILON = 0.005


def raising(exc: Exception):
    """Build a job that always raises exc."""
    def job():
        raise exc
    return job


class TestPacing:
    """Tests for dispatch spacing."""

    @pytest.mark.asyncio
    async def test_dispatches_respect_min_interval(self, make_scheduler):
        """Test five jobs at 2 rps are spaced at least 500ms apart."""
        scheduler = make_scheduler(ProviderConfig("slow", requests_per_second=2))
        dispatched_at = []

        async def job():
            dispatched_at.append(time.monotonic())
            return len(dispatched_at)

        futures = [scheduler.schedule("slow", job) for _ in range(5)]
        results = await asyncio.gather(*futures)

        assert results == [1, 2, 3, 4, 5]
        gaps = [b - a for a, b in zip(dispatched_at, dispatched_at[1:])]
        assert len(gaps) == 4
        assert all(gap >= 0.5 - EPSILON for gap in gaps)

    @pytest.mark.asyncio
    async def test_first_dispatch_is_immediate(self, make_scheduler):
        """Test an idle provider dispatches without waiting."""
        scheduler = make_scheduler(ProviderConfig("slow", requests_per_second=1))

        start = time.monotonic()
        await scheduler.schedule("slow", lambda: "done")

        assert time.monotonic() - start < 0.5

    @pytest.mark.asyncio
    async def test_providers_are_independent(self, make_scheduler):
        """Test pacing on one provider does not delay another."""
        scheduler = make_scheduler(
            ProviderConfig("alpha", requests_per_second=1),
            ProviderConfig("beta", requests_per_second=1),
        )

        start = time.monotonic()
        await asyncio.gather(
            scheduler.schedule("alpha", lambda: "a"),
            scheduler.schedule("beta", lambda: "b"),
        )

        assert time.monotonic() - start < 0.5

    @pytest.mark.asyncio
    async def test_fifo_order(self, make_scheduler):
        """Test jobs for one provider run in submission order."""
        scheduler = make_scheduler(ProviderConfig("fast", requests_per_second=100))
        order = []

        futures = [scheduler.schedule("fast", lambda i=i: order.append(i)) for i in range(10)]
        await asyncio.gather(*futures)

        assert order == list(range(10))

    @pytest.mark.asyncio
    async def test_unknown_provider_uses_defaults(self, make_scheduler):
        """Test an unconfigured provider gets the default policy."""
        scheduler = make_scheduler()

        assert await scheduler.schedule("custom", lambda: "ok") == "ok"

        stats = scheduler.get_stats("custom")
        assert stats["requests_per_second"] == 100
        assert stats["dispatch_count"] == 1


class TestRetry:
    """Tests for retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, make_scheduler):
        """Test two failures then success wait out both backoff delays."""
        scheduler = make_scheduler(
            ProviderConfig("flaky", requests_per_second=100, max_retries=3, base_delay=0.1)
        )
        attempts = []

        async def flaky():
            attempts.append(time.monotonic())
            if len(attempts) < 3:
                raise TransientProviderError("503", "flaky", 503)
            return "recovered"

        result = await scheduler.schedule("flaky", flaky)

        assert result == "recovered"
        assert len(attempts) == 3
        # Delays are base_delay * 2**retry_count: 0.2s then 0.4s
        assert attempts[1] - attempts[0] >= 0.2 - EPSILON
        assert attempts[2] - attempts[1] >= 0.4 - EPSILON
        assert attempts[2] - attempts[0] >= 0.3

    @pytest.mark.asyncio
    async def test_exhausted_retries_reject_with_last_error(self, make_scheduler):
        """Test the caller sees the original error after max_retries."""
        scheduler = make_scheduler(
            ProviderConfig("down", requests_per_second=100, max_retries=2, base_delay=0.01, failure_threshold=10)
        )
        calls = []

        async def always_fails():
            calls.append(1)
            raise TransientProviderError("connection reset", "down")

        with pytest.raises(TransientProviderError, match="connection reset"):
            await scheduler.schedule("down", always_fails)

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_per_call_retry_override(self, make_scheduler):
        """Test max_retries passed to schedule overrides the provider's."""
        scheduler = make_scheduler(
            ProviderConfig("down", requests_per_second=100, max_retries=3, failure_threshold=10)
        )
        calls = []

        def always_fails():
            calls.append(1)
            raise ValueError("bad response")

        with pytest.raises(ValueError):
            await scheduler.schedule("down", always_fails, max_retries=0)

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retry_runs_before_later_jobs(self, make_scheduler):
        """Test a retried job goes back to the front of the queue."""
        scheduler = make_scheduler(
            ProviderConfig("paced", requests_per_second=20, max_retries=1, base_delay=0.005)
        )
        log = []
        failed_once = False

        async def first():
            nonlocal failed_once
            if not failed_once:
                failed_once = True
                log.append("first:failed")
                raise TransientProviderError("429", "paced", 429)
            log.append("first:ok")

        futures = [
            scheduler.schedule("paced", first),
            scheduler.schedule("paced", lambda: log.append("second")),
            scheduler.schedule("paced", lambda: log.append("third")),
        ]
        await asyncio.gather(*futures)

        assert log == ["first:failed", "first:ok", "second", "third"]


class TestCircuitBreaking:
    """Tests for the breaker wired into the scheduler."""

    @pytest.mark.asyncio
    async def test_circuit_opens_and_rejects(self, make_scheduler):
        """Test three failing jobs open the circuit and the fourth never runs."""
        scheduler = make_scheduler(
            ProviderConfig("broken", requests_per_second=100, max_retries=0, failure_threshold=3)
        )

        async def fails():
            raise TransientProviderError("500", "broken", 500)

        for _ in range(3):
            with pytest.raises(TransientProviderError):
                await scheduler.schedule("broken", fails)

        assert scheduler.get_breaker("broken").state is CircuitState.OPEN

        calls = []
        with pytest.raises(CircuitOpenError):
            await scheduler.schedule("broken", lambda: calls.append(1))

        assert calls == []

    @pytest.mark.asyncio
    async def test_circuit_rejection_is_not_retried(self, make_scheduler):
        """Test a circuit rejection settles the job without using retries."""
        scheduler = make_scheduler(
            ProviderConfig("broken", requests_per_second=100, max_retries=0, failure_threshold=1)
        )

        with pytest.raises(ValueError):
            await scheduler.schedule("broken", raising(ValueError("boom")))

        start = time.monotonic()
        with pytest.raises(CircuitOpenError):
            await scheduler.schedule("broken", lambda: "never", max_retries=5, base_delay=1.0)

        assert time.monotonic() - start < 0.5

    @pytest.mark.asyncio
    async def test_circuit_recovers_after_timeout(self, make_scheduler):
        """Test a successful job after reset_timeout closes the circuit."""
        scheduler = make_scheduler(
            ProviderConfig(
                "recovering", requests_per_second=100, max_retries=0,
                failure_threshold=3, reset_timeout=1.0,
            )
        )

        async def fails():
            raise TransientProviderError("502", "recovering", 502)

        for _ in range(3):
            with pytest.raises(TransientProviderError):
                await scheduler.schedule("recovering", fails)

        await asyncio.sleep(1.05)

        assert await scheduler.schedule("recovering", lambda: "back") == "back"

        breaker = scheduler.get_breaker("recovering")
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_state_changes_reported(self, make_scheduler):
        """Test the scheduler forwards breaker transitions to its callback."""
        transitions = []
        scheduler = make_scheduler(
            ProviderConfig("broken", requests_per_second=100, max_retries=0, failure_threshold=1),
            on_state_change=lambda name, old, new: transitions.append((name, new)),
        )

        with pytest.raises(RuntimeError):
            await scheduler.schedule("broken", raising(RuntimeError("x")))

        assert transitions == [("broken", CircuitState.OPEN)]

    @pytest.mark.asyncio
    async def test_schedule_with_retry_waits_out_open_circuit(self, make_scheduler):
        """Test the outer retry loop re-attempts after circuit rejections."""
        scheduler = make_scheduler(
            ProviderConfig(
                "flapping", requests_per_second=100, max_retries=0,
                failure_threshold=1, reset_timeout=0.1,
            )
        )

        with pytest.raises(TransientProviderError):
            await scheduler.schedule(
                "flapping",
                raising(TransientProviderError("503", "flapping")),
            )

        calls = []

        async def succeeds():
            calls.append(1)
            return "ok"

        result = await scheduler.schedule_with_retry("flapping", succeeds, max_retries=3, base_delay=0.05)

        assert result == "ok"
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_schedule_with_retry_gives_up(self, make_scheduler):
        """Test the outer loop re-raises once its budget is spent."""
        scheduler = make_scheduler(
            ProviderConfig("down", requests_per_second=100, max_retries=0, failure_threshold=100)
        )
        calls = []

        def fails():
            calls.append(1)
            raise TransientProviderError("timeout", "down")

        with pytest.raises(TransientProviderError):
            await scheduler.schedule_with_retry("down", fails, max_retries=1, base_delay=0.01)

        # Each outer attempt also spends the job's own retry budget
        assert len(calls) == 4


class TestStatsAndLifecycle:
    """Tests for statistics and shutdown."""

    @pytest.mark.asyncio
    async def test_stats_unknown_provider(self, make_scheduler):
        """Test stats for a provider never scheduled are empty."""
        scheduler = make_scheduler()

        assert scheduler.get_stats("nobody") == {}
        assert scheduler.get_stats() == {}

    @pytest.mark.asyncio
    async def test_stats_after_dispatch(self, make_scheduler):
        """Test stats reflect dispatches and breaker state."""
        scheduler = make_scheduler(ProviderConfig("fast", requests_per_second=50))

        await asyncio.gather(*(scheduler.schedule("fast", lambda: None) for _ in range(3)))
        stats = scheduler.get_stats("fast")

        assert stats == {
            "queue_size": 0,
            "requests_per_second": 50,
            "is_draining": False,
            "circuit_state": "closed",
            "failure_count": 0,
            "last_failure_at": None,
            "dispatch_count": 3,
        }
        assert set(scheduler.get_stats()) == {"fast"}

    @pytest.mark.asyncio
    async def test_queue_size_while_waiting(self, make_scheduler):
        """Test pending jobs are counted while pacing holds them back."""
        scheduler = make_scheduler(ProviderConfig("slow", requests_per_second=1))

        futures = [scheduler.schedule("slow", lambda: None) for _ in range(3)]
        await futures[0]

        stats = scheduler.get_stats("slow")
        assert stats["is_draining"] is True
        assert stats["queue_size"] == 2

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self, make_scheduler):
        """Test close cancels jobs that have not been dispatched."""
        scheduler = make_scheduler(ProviderConfig("slow", requests_per_second=1))

        first = scheduler.schedule("slow", lambda: "first")
        second = scheduler.schedule("slow", lambda: "second")
        assert await first == "first"

        await scheduler.close()

        assert second.cancelled()
        with pytest.raises(RuntimeError):
            scheduler.schedule("slow", lambda: None)


class TestJobCancellation:
    """Tests for jobs that are cancelled from the inside."""

    @pytest.mark.asyncio
    async def test_cancelled_job_does_not_stall_queue(self, make_scheduler):
        """Test a job whose fn is cancelled settles alone and later jobs still run."""
        scheduler = make_scheduler(ProviderConfig("worker", requests_per_second=100))

        async def awaits_cancelled_task():
            inner = asyncio.create_task(asyncio.sleep(10))
            asyncio.get_running_loop().call_later(0.01, inner.cancel)
            await inner

        first = scheduler.schedule("worker", awaits_cancelled_task)
        second = scheduler.schedule("worker", lambda: "second")

        assert await asyncio.wait_for(second, timeout=1.0) == "second"
        assert first.cancelled()

        stats = scheduler.get_stats("worker")
        assert stats["queue_size"] == 0
        assert stats["dispatch_count"] == 2
        assert stats["circuit_state"] == "closed"

    @pytest.mark.asyncio
    async def test_queue_keeps_draining_after_cancelled_job(self, make_scheduler):
        """Test work scheduled after a cancelled job is dispatched."""
        scheduler = make_scheduler(ProviderConfig("worker", requests_per_second=100))

        async def cancelled():
            raise asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await scheduler.schedule("worker", cancelled)

        assert await asyncio.wait_for(scheduler.schedule("worker", lambda: 42), timeout=1.0) == 42

    @pytest.mark.asyncio
    async def test_schedule_with_retry_negative_budget(self, make_scheduler):
        """Test a negative retry budget still makes exactly one attempt."""
        scheduler = make_scheduler(
            ProviderConfig("down", requests_per_second=100, max_retries=0, failure_threshold=100)
        )
        calls = []

        def fails():
            calls.append(1)
            raise TransientProviderError("timeout", "down")

        with pytest.raises(TransientProviderError):
            await scheduler.schedule_with_retry("down", fails, max_retries=-1)

        assert len(calls) == 1
