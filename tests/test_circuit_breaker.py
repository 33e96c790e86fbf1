"""
Tests for the warehouse circuit breaker.
"""

import pytest

from leave_workflow.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def failing_query():
    raise ConnectionError("warehouse unreachable")


def open_breaker(cb, failures):
    for _ in range(failures):
        with pytest.raises(ConnectionError):
            cb.call(failing_query)


class TestCircuitBreaker:
    """Test circuit breaker state transitions."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    def test_initial_state_closed(self):
        """Circuit breaker should start in CLOSED state."""
        cb = CircuitBreaker(failure_threshold=3, timeout=5)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker(failure_threshold=0)

    def test_successful_call_passes_result_through(self):
        cb = CircuitBreaker(failure_threshold=3)
        assert cb.call(lambda x, y=0: x + y, 2, y=3) == 5
        assert cb.state == CircuitState.CLOSED

    def test_single_failure_stays_closed(self):
        """Single failure should not open circuit, and the error is re-raised."""
        cb = CircuitBreaker(failure_threshold=3)
        open_breaker(cb, 1)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 1

    def test_success_resets_failure_count(self):
        """Only consecutive failures count."""
        cb = CircuitBreaker(failure_threshold=3)
        open_breaker(cb, 2)
        cb.call(lambda: "ok")
        open_breaker(cb, 2)
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 2

    def test_threshold_failures_opens_circuit(self):
        cb = CircuitBreaker(failure_threshold=3)
        open_breaker(cb, 3)
        assert cb.state == CircuitState.OPEN
        assert cb.failure_count == 3

    def test_open_circuit_blocks_calls(self, clock):
        """Open circuit rejects calls without running them."""
        cb = CircuitBreaker(failure_threshold=2, timeout=30, clock=clock)
        open_breaker(cb, 2)
        calls = []

        clock.advance(10)
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            cb.call(lambda: calls.append("ran"))

        assert calls == []
        assert exc_info.value.retry_in == pytest.approx(20)

    def test_half_open_success_closes_circuit(self, clock):
        """CLOSED -> OPEN -> HALF_OPEN -> CLOSED."""
        cb = CircuitBreaker(failure_threshold=2, timeout=30, clock=clock)
        open_breaker(cb, 2)

        clock.advance(30)
        assert cb.call(lambda: "recovered") == "recovered"
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_half_open_failure_reopens_circuit(self, clock):
        """A failed trial call re-opens immediately, whatever the count."""
        cb = CircuitBreaker(failure_threshold=5, timeout=30, clock=clock)
        open_breaker(cb, 5)

        clock.advance(31)
        open_breaker(cb, 1)
        assert cb.state == CircuitState.OPEN

        clock.advance(5)
        with pytest.raises(CircuitBreakerOpenError):
            cb.call(lambda: "too early")

    def test_reset(self):
        cb = CircuitBreaker(failure_threshold=1)
        open_breaker(cb, 1)
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert cb.call(lambda: 1) == 1

    def test_get_state_returns_dict(self):
        cb = CircuitBreaker(failure_threshold=5, timeout=60, name="hr-warehouse")
        state = cb.get_state()
        assert state == {
            "name": "hr-warehouse",
            "state": "closed",
            "failure_count": 0,
            "failure_threshold": 5,
            "timeout": 60,
        }

    def test_half_open_admits_a_single_call(self, clock):
        """While the recovery call runs, other callers are turned away."""
        cb = CircuitBreaker(failure_threshold=1, timeout=30, clock=clock)
        open_breaker(cb, 1)
        clock.advance(30)
        concurrent = []

        def recovery_call():
            with pytest.raises(CircuitBreakerOpenError):
                cb.call(lambda: concurrent.append("ran"))
            return "recovered"

        assert cb.call(recovery_call) == "recovered"
        assert concurrent == []
        assert cb.state == CircuitState.CLOSED
        assert cb.call(lambda: "next") == "next"

    def test_failed_recovery_call_allows_a_later_one(self, clock):
        cb = CircuitBreaker(failure_threshold=1, timeout=30, clock=clock)
        open_breaker(cb, 1)
        clock.advance(30)
        open_breaker(cb, 1)

        clock.advance(30)
        assert cb.call(lambda: "ok") == "ok"
        assert cb.state == CircuitState.CLOSED
