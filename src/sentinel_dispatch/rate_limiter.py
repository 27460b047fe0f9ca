"""
Per-provider rate limiting for Sentinel Dispatch

Each provider gets its own FIFO queue, drained by a single asyncio task:
- Dispatches are spaced at least min_interval apart
- Every dispatch runs through the provider's CircuitBreaker
- Failed jobs are retried with exponential backoff, ahead of later arrivals
- Circuit rejections are returned to the caller immediately

Queues and breakers are created on first use and live for the process.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .circuit_breaker import CircuitBreaker, StateChangeCallback
from .config import ProviderConfig, SchedulerConfig
from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

JobFn = Callable[[], Awaitable[Any] | Any]


@dataclass
class Job:
    """One unit of work waiting for dispatch."""

    fn: JobFn
    future: asyncio.Future
    max_retries: int
    base_delay: float
    retry_count: int = 0
    enqueued_at: float = field(default_factory=time.monotonic)


@dataclass
class ProviderQueue:
    """Pending work and pacing state for one provider."""

    provider_id: str
    requests_per_second: float
    min_interval: float
    breaker: CircuitBreaker
    pending: deque[Job] = field(default_factory=deque)
    is_draining: bool = False
    last_dispatch_at: float | None = None
    dispatch_count: int = 0


class ProviderScheduler:
    """
    Routes work to per-provider queues.

    Concurrency across providers is unbounded; within one provider there is
    at most one in-flight dispatch.
    """

    def __init__(
        self,
        config: SchedulerConfig | None = None,
        on_state_change: StateChangeCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or SchedulerConfig()
        self._on_state_change = on_state_change
        self._clock = clock

        self._queues: dict[str, ProviderQueue] = {}
        self._drain_tasks: dict[str, asyncio.Task] = {}
        self._retry_tasks: set[asyncio.Task] = set()
        self._closed = False

    def get_provider_config(self, provider_id: str) -> ProviderConfig:
        return self.config.get_provider_config(provider_id)

    def _get_queue(self, provider_id: str) -> ProviderQueue:
        """Get or lazily create the queue and breaker for a provider."""
        queue = self._queues.get(provider_id)
        if queue is None:
            provider = self.get_provider_config(provider_id)
            breaker = CircuitBreaker(
                name=provider_id,
                failure_threshold=provider.breaker_threshold,
                reset_timeout=provider.reset_timeout,
                on_state_change=self._on_state_change,
                clock=self._clock,
            )
            queue = ProviderQueue(
                provider_id=provider_id,
                requests_per_second=provider.requests_per_second,
                min_interval=provider.min_interval,
                breaker=breaker,
            )
            self._queues[provider_id] = queue
            logger.debug(
                f"[RateLimiter] Created queue for {provider_id}: "
                f"{provider.requests_per_second:g} rps, breaker threshold {breaker.failure_threshold}"
            )
        return queue

    def get_breaker(self, provider_id: str) -> CircuitBreaker:
        """Get the circuit breaker for a provider (created on demand)."""
        return self._get_queue(provider_id).breaker

    def schedule(
        self,
        provider_id: str,
        fn: JobFn,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> asyncio.Future:
        """
        Enqueue work for a provider.

        Must be called from a running event loop. The returned future settles
        when the job succeeds, exhausts its retries, or is rejected by an open
        circuit.

        Args:
            provider_id: Name of the provider
            fn: Zero-argument callable returning a value or an awaitable
            max_retries: Override for the provider's retry budget
            base_delay: Override for the provider's backoff base (seconds)

        Returns:
            Awaitable future with fn's result
        """
        if self._closed:
            raise RuntimeError("ProviderScheduler is closed")

        loop = asyncio.get_running_loop()
        provider = self.get_provider_config(provider_id)
        queue = self._get_queue(provider_id)

        job = Job(
            fn=fn,
            future=loop.create_future(),
            max_retries=provider.max_retries if max_retries is None else max_retries,
            base_delay=provider.base_delay if base_delay is None else base_delay,
        )
        queue.pending.append(job)
        self._ensure_draining(queue)
        return job.future

    async def schedule_with_retry(
        self,
        provider_id: str,
        fn: JobFn,
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> Any:
        """
        Schedule with an outer retry loop.

        Unlike schedule(), this also re-attempts after a circuit rejection,
        waiting out the backoff before each new attempt.
        """
        provider = self.get_provider_config(provider_id)
        retries = max(0, provider.max_retries if max_retries is None else max_retries)
        delay_base = provider.base_delay if base_delay is None else base_delay

        attempt = 0
        while True:
            try:
                return await self.schedule(provider_id, fn, max_retries, base_delay)
            except Exception as e:
                if attempt >= retries:
                    raise
                delay = min(delay_base * (2 ** attempt), self.config.max_backoff)
                logger.debug(
                    f"[RateLimiter] {provider_id} attempt {attempt + 1} failed "
                    f"({type(e).__name__}), retrying in {delay:.2f}s"
                )
                attempt += 1
                await asyncio.sleep(delay)

    def _ensure_draining(self, queue: ProviderQueue) -> None:
        if queue.is_draining or not queue.pending or self._closed:
            return
        queue.is_draining = True
        task = asyncio.get_running_loop().create_task(self._drain(queue))
        self._drain_tasks[queue.provider_id] = task

    async def _wait_for_slot(self, queue: ProviderQueue) -> None:
        # Re-check after sleeping: the loop may wake a timer slightly early
        while queue.last_dispatch_at is not None:
            wait = queue.min_interval - (self._clock() - queue.last_dispatch_at)
            if wait <= 0:
                return
            await asyncio.sleep(wait)

    async def _drain(self, queue: ProviderQueue) -> None:
        """Dispatch queued jobs one at a time, paced by min_interval."""
        try:
            while queue.pending:
                # Pop only once the slot is free so a retry requeued meanwhile goes first
                await self._wait_for_slot(queue)
                job = queue.pending.popleft()

                if job.future.done():
                    continue

                queue.last_dispatch_at = self._clock()
                queue.dispatch_count += 1
                try:
                    await self._dispatch(queue, job)
                except asyncio.CancelledError:
                    job.future.cancel()
                    if self._closed or _cancel_requested():
                        raise
                    # Raised by the job itself: settle it and keep draining
                    logger.debug(f"[RateLimiter] {queue.provider_id} job was cancelled")
        finally:
            queue.is_draining = False
            self._drain_tasks.pop(queue.provider_id, None)
            if queue.pending and not self._closed:
                self._ensure_draining(queue)

    async def _dispatch(self, queue: ProviderQueue, job: Job) -> None:
        try:
            result = await queue.breaker.execute(job.fn)
        except CircuitOpenError as e:
            if not job.future.done():
                job.future.set_exception(e)
        except Exception as e:
            if job.retry_count < job.max_retries:
                job.retry_count += 1
                delay = min(job.base_delay * (2 ** job.retry_count), self.config.max_backoff)
                logger.debug(
                    f"[RateLimiter] {queue.provider_id} job failed ({type(e).__name__}: {e}), "
                    f"retry {job.retry_count}/{job.max_retries} in {delay:.2f}s"
                )
                self._schedule_retry(queue, job, delay)
            else:
                logger.warning(
                    f"[RateLimiter] {queue.provider_id} job failed after "
                    f"{job.retry_count} retries: {type(e).__name__}: {e}"
                )
                if not job.future.done():
                    job.future.set_exception(e)
        else:
            if not job.future.done():
                job.future.set_result(result)

    def _schedule_retry(self, queue: ProviderQueue, job: Job, delay: float) -> None:
        async def requeue() -> None:
            try:
                await asyncio.sleep(delay)
            except asyncio.CancelledError:
                job.future.cancel()
                raise
            queue.pending.appendleft(job)
            self._ensure_draining(queue)

        task = asyncio.get_running_loop().create_task(requeue())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    def _queue_stats(self, queue: ProviderQueue) -> dict[str, Any]:
        breaker = queue.breaker
        return {
            "queue_size": len(queue.pending),
            "requests_per_second": queue.requests_per_second,
            "is_draining": queue.is_draining,
            "circuit_state": breaker.state.value,
            "failure_count": breaker.failure_count,
            "last_failure_at": breaker.last_failure_at,
            "dispatch_count": queue.dispatch_count,
        }

    def get_stats(self, provider_id: str | None = None) -> dict[str, Any]:
        """
        Get queue and breaker statistics.

        Args:
            provider_id: A single provider, or None for every known provider

        Returns:
            Stats dict for the provider (empty if never scheduled), or a dict
            of stats dicts keyed by provider id
        """
        if provider_id is not None:
            queue = self._queues.get(provider_id)
            return self._queue_stats(queue) if queue else {}

        return {pid: self._queue_stats(queue) for pid, queue in self._queues.items()}

    async def close(self) -> None:
        """Stop background tasks and cancel jobs that have not settled."""
        self._closed = True

        tasks = [*self._drain_tasks.values(), *self._retry_tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        for queue in self._queues.values():
            while queue.pending:
                job = queue.pending.popleft()
                if not job.future.done():
                    job.future.cancel()


def _cancel_requested() -> bool:
    """Whether the running task itself has a pending cancel() request (3.11+)."""
    task = asyncio.current_task()
    cancelling = getattr(task, "cancelling", None)
    return bool(cancelling and cancelling())
