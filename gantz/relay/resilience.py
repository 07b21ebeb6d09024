"""
Gantz Resilience - Backoff and circuit breaking for the relay connection.

One breaker guards every connection attempt so that a relay outage turns
into a few spaced-out probes instead of a reconnect storm.
"""

import logging
import random
import threading
import time
from enum import Enum
from typing import Callable, Optional, TypeVar

from gantz.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ExponentialBackoff:
    """
    Delays of ``initial * factor**attempt`` capped at ``maximum``, with jitter.

    Example:
        >>> backoff = ExponentialBackoff(initial=1, maximum=30, jitter=0)
        >>> [backoff.next_delay() for _ in range(6)]
        [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    """

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 30.0,
        factor: float = 2.0,
        jitter: float = 0.1,
        rng: Optional[random.Random] = None,
    ):
        self.initial = initial
        self.maximum = maximum
        self.factor = factor
        self.jitter = jitter
        self.attempt = 0
        self._rng = rng or random.Random()

    def next_delay(self) -> float:
        delay = min(self.initial * (self.factor ** self.attempt), self.maximum)
        self.attempt += 1
        if self.jitter:
            delay += delay * self.jitter * self._rng.random()
            delay = min(delay, self.maximum)
        return float(delay)

    def reset(self) -> None:
        self.attempt = 0


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Closed / Open / Half-Open breaker.

    - Closed: calls go through; ``failure_threshold`` consecutive failures open it.
    - Open: calls fail fast with ``CircuitOpenError`` until ``reset_timeout`` passes.
    - Half-Open: one trial call; success closes, failure reopens.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "relay",
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    def _current_state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
            self._state = CircuitState.HALF_OPEN
        return self._state

    def retry_after(self) -> float:
        """Seconds until an open breaker admits a trial call."""
        with self._lock:
            if self._current_state() is not CircuitState.OPEN:
                return 0.0
            return max(self.reset_timeout - (self._clock() - self._opened_at), 0.0)

    def call(self, func: Callable[[], T]) -> T:
        """Run ``func`` through the breaker. Its exceptions count as failures and propagate."""
        with self._lock:
            if self._current_state() is CircuitState.OPEN:
                raise CircuitOpenError(f"{self.name} circuit open")
        try:
            result = func()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("%s circuit closed", self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            state = self._current_state()
            self._failures += 1
            if state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if state is not CircuitState.OPEN:
                    logger.warning("%s circuit open after %d failures", self.name, self._failures)
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
