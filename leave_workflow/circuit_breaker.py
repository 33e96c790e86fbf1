"""
Circuit breaker for HR warehouse calls.

When the warehouse is down, every conflict check would otherwise wait on
a failing query. The breaker trips after ``failure_threshold`` consecutive
failures and rejects calls immediately until ``timeout`` seconds have
passed, then lets a single trial call through.

States:
- CLOSED: calls pass through
- OPEN: calls fail immediately with ``CircuitBreakerOpenError``
- HALF_OPEN: a single trial call runs; concurrent callers are rejected
  until it finishes. Success closes, failure re-opens
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreakerOpenError(RuntimeError):
    """Raised when the breaker is open and the call was not attempted."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Circuit '{name}' is open; retry in {retry_in:.0f}s")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    Args:
        failure_threshold: consecutive failures before opening
        timeout: seconds to stay open before allowing a trial call
        name: label used in logs and in ``get_state()``
        clock: monotonic time source, injectable for tests
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: float = 60,
        name: str = "hr-warehouse",
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()

        self.failure_count = 0
        self.state = CircuitState.CLOSED
        self.opened_at: float | None = None
        self._trial_in_flight = False

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``func`` under breaker protection; re-raises whatever it raises."""
        self._before_call()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return
            if self.state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitBreakerOpenError(self.name, 0)
                self._trial_in_flight = True
                return
            elapsed = self._clock() - (self.opened_at or 0)
            if elapsed < self.timeout:
                raise CircuitBreakerOpenError(self.name, self.timeout - elapsed)
            logger.info(f"Circuit '{self.name}': OPEN -> HALF_OPEN")
            self.state = CircuitState.HALF_OPEN
            self._trial_in_flight = True

    def _record_success(self) -> None:
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit '{self.name}': HALF_OPEN -> CLOSED")
            self.failure_count = 0
            self.state = CircuitState.CLOSED
            self.opened_at = None
            self._trial_in_flight = False

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            self._trial_in_flight = False
            self.failure_count += 1
            logger.error(
                f"Circuit '{self.name}' failure "
                f"({self.failure_count}/{self.failure_threshold}): {error}"
            )
            if (
                self.state == CircuitState.HALF_OPEN
                or self.failure_count >= self.failure_threshold
            ):
                if self.state != CircuitState.OPEN:
                    logger.warning(f"Circuit '{self.name}': {self.state.name} -> OPEN")
                self.state = CircuitState.OPEN
                self.opened_at = self._clock()

    def reset(self) -> None:
        with self._lock:
            self.failure_count = 0
            self.state = CircuitState.CLOSED
            self.opened_at = None
            self._trial_in_flight = False

    def get_state(self) -> dict:
        """Breaker status for the /metrics endpoint."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "timeout": self.timeout,
        }

