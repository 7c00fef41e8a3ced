# circuit_breaker.py – Circuit breaker for flaky upstream lookups
from __future__ import annotations
import time
import random
import logging
import threading
from enum import Enum
from typing import Dict, Callable, Any
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitMetrics:
    """Detailed metrics for monitoring"""
    total_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_failure_time: float = 0.0
    last_success_time: float = 0.0

    @property
    def failure_rate(self) -> float:
        return self.failed_requests / max(self.total_requests, 1)

    def reset(self):
        self.total_requests = 0
        self.failed_requests = 0


class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open."""
    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is OPEN. Retry in {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Thread-safe circuit breaker with jittered retry hint.

    While OPEN every call fails fast with CircuitBreakerOpen so callers can
    take their fallback path without waiting on a dead upstream.
    """

    def __init__(
        self,
        name: str,
        consecutive_failures_threshold: int = 3,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.consecutive_failures_threshold = consecutive_failures_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.metrics = CircuitMetrics()
        self.last_state_change = clock()

        self.base_delay = 1.0
        self.max_delay = 300.0
        self.backoff_multiplier = 2.0
        self.jitter_range = 0.1

        self._lock = threading.Lock()
        logger.info(f"[CB:{self.name}] Initialized with failure_threshold={consecutive_failures_threshold}")

    def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute function through circuit breaker."""
        with self._lock:
            if self._should_attempt_recovery():
                self._transition(CircuitState.HALF_OPEN, "Testing recovery")
            if self.state == CircuitState.OPEN:
                raise CircuitBreakerOpen(self.name, self._retry_delay())

        # Execute outside lock
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            with self._lock:
                self.metrics.total_requests += 1
                self.metrics.failed_requests += 1
                self.metrics.consecutive_failures += 1
                self.metrics.consecutive_successes = 0
                self.metrics.last_failure_time = self._clock()
                if self.state == CircuitState.HALF_OPEN:
                    self._transition(CircuitState.OPEN, f"Recovery test failed: {e}")
                elif self.metrics.consecutive_failures >= self.consecutive_failures_threshold:
                    self._transition(CircuitState.OPEN, f"Threshold exceeded: {e}")
            raise

        with self._lock:
            self.metrics.total_requests += 1
            self.metrics.consecutive_successes += 1
            self.metrics.consecutive_failures = 0
            self.metrics.last_success_time = self._clock()
            if self.state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED, "Recovery successful")
        return result

    def _should_attempt_recovery(self) -> bool:
        return (
            self.state == CircuitState.OPEN
            and self._clock() - self.last_state_change >= self.recovery_timeout
        )

    def _transition(self, new_state: CircuitState, reason: str):
        old_state = self.state
        self.state = new_state
        self.last_state_change = self._clock()

        logger.warning(
            f"[CB:{self.name}] {old_state.value} → {new_state.value}. {reason}. "
            f"Failure rate: {self.metrics.failure_rate:.1%}"
        )

        if new_state == CircuitState.CLOSED:
            self.metrics.reset()
            self.metrics.consecutive_successes = 0

    def _retry_delay(self) -> float:
        """Seconds until the next recovery probe, with jitter."""
        remaining = self.recovery_timeout - (self._clock() - self.last_state_change)
        delay = min(max(remaining, self.base_delay), self.max_delay)
        jitter = delay * self.jitter_range * (random.random() * 2 - 1)
        return max(0.1, delay + jitter)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_rate": self.metrics.failure_rate,
            "total_requests": self.metrics.total_requests,
            "consecutive_failures": self.metrics.consecutive_failures,
        }
