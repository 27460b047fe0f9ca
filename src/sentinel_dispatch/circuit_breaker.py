"""
Circuit breaker guarding calls to a single provider.

State machine:
- CLOSED: calls pass through; failures accumulate until failure_threshold
- OPEN: calls are rejected with CircuitOpenError until reset_timeout elapses
- HALF_OPEN: a single probe call decides between CLOSED and OPEN
"""

import inspect
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")

StateChangeCallback = Callable[[str, "CircuitState", "CircuitState"], None]


class CircuitState(str, Enum):
    """Health state of a provider's breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


def _log_state_change(provider: str, old: CircuitState, new: CircuitState) -> None:
    logger.warning(f"[RateLimiter] Circuit breaker for {provider}: {old.value} -> {new.value}")


class CircuitBreaker:
    """
    Per-provider circuit breaker.

    The state-change callback is for observability only; an exception raised
    by it is logged and does not change the outcome of the guarded call.
    """

    def __init__(
        self,
        name: str = "provider",
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        on_state_change: StateChangeCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.reset_timeout = reset_timeout
        self.on_state_change = on_state_change or _log_state_change
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> float | None:
        return self._last_failure_at

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        try:
            self.on_state_change(self.name, old_state, new_state)
        except Exception as e:
            logger.error(f"[RateLimiter] State change callback failed for {self.name}: {e}")

    def _retry_after(self) -> float:
        if self._last_failure_at is None:
            return 0.0
        remaining = self.reset_timeout - (self._clock() - self._last_failure_at)
        return max(0.0, remaining)

    def is_available(self) -> bool:
        """Check whether a call would be attempted, without changing state."""
        if self._state is CircuitState.CLOSED:
            return True
        if self._state is CircuitState.HALF_OPEN:
            return not self._probe_in_flight
        return self._retry_after() <= 0

    def _before_call(self) -> None:
        if self._state is CircuitState.OPEN:
            if self._retry_after() > 0:
                raise CircuitOpenError(self.name, self._retry_after())
            self._transition(CircuitState.HALF_OPEN)

        if self._state is CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True

    def _on_success(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._failure_count = 0
            self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_at = self._clock()

        if self._state is CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def execute(self, fn: Callable[[], Awaitable[T] | T]) -> T:
        """
        Run fn through the breaker.

        Args:
            fn: Zero-argument callable returning a value or an awaitable

        Returns:
            Whatever fn returns

        Raises:
            CircuitOpenError: If the breaker is open (fn is not called)
            Exception: Any error raised by fn, after it is recorded
        """
        self._before_call()
        probing = self._state is CircuitState.HALF_OPEN

        try:
            result: Any = fn()
            if inspect.isawaitable(result):
                result = await result
        except BaseException as e:
            if probing:
                self._probe_in_flight = False
            if isinstance(e, Exception):
                self._on_failure()
            raise

        if probing:
            self._probe_in_flight = False
        self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._failure_count = 0
        self._last_failure_at = None
        self._probe_in_flight = False
        self._transition(CircuitState.CLOSED)

    def get_state(self) -> dict[str, Any]:
        """Get breaker state as a dictionary."""
        return {
            "state": self._state.value,
            "failure_count": self._failure_count,
            "last_failure_at": self._last_failure_at,
        }
