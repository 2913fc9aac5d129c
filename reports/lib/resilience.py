"""Circuit breaker protecting the upstream report API.

One breaker instance is shared by every run calling the same API; it is
passed into the workflow explicitly rather than living in module state.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from reports.lib.constants import (
    DEFAULT_CIRCUIT_BREAKER_THRESHOLD,
    DEFAULT_CIRCUIT_BREAKER_TIMEOUT_MS,
    DEFAULT_HALF_OPEN_MAX_CALLS,
)
from reports.lib.errors import CircuitBreakerOpen

logger = logging.getLogger(__name__)

__all__ = ["CircuitBreaker", "CircuitBreakerOpen", "CircuitState"]

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Three-state failure isolator for async calls.

    States:
    - CLOSED: Normal operation, calls pass through
    - OPEN: Failing fast, calls are rejected without being invoked
    - HALF_OPEN: Probing whether the upstream recovered

    Example:
        breaker = CircuitBreaker(failure_threshold=5, timeout_seconds=60)

        try:
            status = await breaker.execute(lambda: api.get_report_status(account, report_id))
        except CircuitBreakerOpen:
            # Upstream is unhealthy; let the retry executor back off
            raise
    """

    def __init__(
        self,
        failure_threshold: int = DEFAULT_CIRCUIT_BREAKER_THRESHOLD,
        timeout_seconds: float = DEFAULT_CIRCUIT_BREAKER_TIMEOUT_MS / 1000.0,
        half_open_max_calls: int = DEFAULT_HALF_OPEN_MAX_CALLS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if half_open_max_calls < 1:
            raise ValueError("half_open_max_calls must be >= 1")
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None

    def _transition(self, state: CircuitState) -> None:
        if state == self.state:
            return
        previous = self.state
        self.state = state
        if state == CircuitState.OPEN:
            logger.warning(
                "Circuit breaker %s -> OPEN after %d failures",
                previous.value,
                self.failure_count,
            )
        else:
            logger.info("Circuit breaker %s -> %s", previous.value, state.value)

    def _before_call(self) -> None:
        if self.state == CircuitState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            if elapsed > self.timeout_seconds:
                self.success_count = 0
                self._transition(CircuitState.HALF_OPEN)
            else:
                raise CircuitBreakerOpen(
                    details={"retry_in_seconds": round(self.timeout_seconds - elapsed, 1)}
                )

        if self.state == CircuitState.HALF_OPEN and self.success_count >= self.half_open_max_calls:
            self.failure_count = 0
            self._transition(CircuitState.CLOSED)

    def record_success(self) -> None:
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.failure_count >= self.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitBreakerOpen: The circuit is open and the timeout has not elapsed
        """
        self._before_call()
        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Return to CLOSED with all counters cleared."""
        self._transition(CircuitState.CLOSED)
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None

    def get_state(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "failure_threshold": self.failure_threshold,
            "timeout_seconds": self.timeout_seconds,
        }
