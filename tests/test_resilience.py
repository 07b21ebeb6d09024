"""Tests for backoff and the circuit breaker."""

import random

import pytest

from gantz.errors import CircuitOpenError, RelayTransportError
from gantz.relay.resilience import CircuitBreaker, CircuitState, ExponentialBackoff


class TestExponentialBackoff:
    """Tests for ExponentialBackoff."""

    def test_doubles_up_to_maximum(self):
        backoff = ExponentialBackoff(initial=1, maximum=30, jitter=0)
        assert [backoff.next_delay() for _ in range(7)] == [1, 2, 4, 8, 16, 30, 30]

    def test_reset(self):
        backoff = ExponentialBackoff(initial=0.5, jitter=0)
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()

        assert backoff.attempt == 0
        assert backoff.next_delay() == 0.5

    def test_jitter_stays_in_bounds(self):
        backoff = ExponentialBackoff(initial=1, maximum=10, jitter=0.5, rng=random.Random(7))
        for attempt in range(8):
            base = min(2 ** attempt, 10)
            delay = backoff.next_delay()
            assert base <= delay <= min(base * 1.5, 10)


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def _fail(self):
        raise RelayTransportError("down")

    def test_opens_after_threshold(self, clock):
        breaker = CircuitBreaker(failure_threshold=3, reset_timeout=30, clock=clock)

        for _ in range(3):
            with pytest.raises(RelayTransportError):
                breaker.call(self._fail)

        assert breaker.state is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "never runs")
        assert breaker.retry_after() == 30

    def test_success_resets_failure_count(self, clock):
        breaker = CircuitBreaker(failure_threshold=2, clock=clock)

        with pytest.raises(RelayTransportError):
            breaker.call(self._fail)
        assert breaker.call(lambda: "ok") == "ok"
        with pytest.raises(RelayTransportError):
            breaker.call(self._fail)

        assert breaker.state is CircuitState.CLOSED

    def test_half_open_trial_success_closes(self, clock):
        breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)
        with pytest.raises(RelayTransportError):
            breaker.call(self._fail)

        clock.advance(10)
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.retry_after() == 0
        assert breaker.call(lambda: 42) == 42
        assert breaker.state is CircuitState.CLOSED

    def test_half_open_trial_failure_reopens(self, clock):
        breaker = CircuitBreaker(failure_threshold=5, reset_timeout=10, clock=clock)
        for _ in range(5):
            with pytest.raises(RelayTransportError):
                breaker.call(self._fail)

        clock.advance(11)
        with pytest.raises(RelayTransportError):
            breaker.call(self._fail)

        assert breaker.state is CircuitState.OPEN
        assert breaker.retry_after() == 10
