"""Resilience - Retry with backoff and circuit breaking for fallible calls.

Two independent state machines, composed by nesting:

    ResilientCall.call(fn) == with_retry(lambda: breaker.execute(fn))

Every retry attempt is a fresh circuit check, so a breaker that opens in the
middle of a retry sequence stops the remaining attempts immediately.

INVARIANTS:
1. An open circuit never invokes the wrapped function
2. Non-retryable errors propagate after a single attempt
3. Time is read from an injectable clock; delays use an injectable sleep
4. One CircuitBreaker per dependency; breakers are never shared across workers
"""

from __future__ import annotations

import logging
import random
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Retry
# =============================================================================

@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings for with_retry()."""

    max_attempts: int = 5
    base_delay_ms: float = 1000
    max_delay_ms: float = 30000
    jitter_factor: float = 0.2  # +/- 20% multiplicative noise


RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

RETRYABLE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"timeout",
        r"timed out",
        r"ECONNRESET",
        r"ETIMEDOUT",
        r"connection reset",
        r"connection error",
        r"rate.?limit",
        r"\b429\b",
        r"\b50[0234]\b",
        r"overloaded",
        r"temporarily unavailable",
    )
)


def base_delay(attempt: int, config: RetryConfig) -> float:
    """Pre-jitter delay (ms) for a 0-indexed attempt."""
    return min(config.base_delay_ms * (2 ** attempt), config.max_delay_ms)


def calculate_delay(
    attempt: int,
    config: RetryConfig,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay (ms) before retrying after a failed 0-indexed attempt.

    Args:
        attempt: Index of the attempt that just failed.
        config: Backoff settings.
        rng: Uniform [0, 1) source, injectable for tests.

    Returns:
        Capped exponential delay perturbed by +/- jitter_factor, never negative.
    """
    delay = base_delay(attempt, config)
    jitter = delay * config.jitter_factor * (rng() * 2 - 1)
    return max(0.0, delay + jitter)


def is_retryable(error: BaseException) -> bool:
    """Classify an error as transient.

    Pure: looks only at the error's type, status attribute and message.
    """
    if isinstance(error, CircuitOpenError):
        return False

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    for attr in ("status_code", "status"):
        status = getattr(error, attr, None)
        if isinstance(status, int) and not isinstance(status, bool):
            return status == 429 or 500 <= status < 600

    message = f"{type(error).__name__}: {error}"
    return any(p.search(message) for p in RETRYABLE_PATTERNS)


def with_retry(
    fn: Callable[[], T],
    config: RetryConfig | None = None,
    sleep: Callable[[float], None] = time.sleep,
    rng: Callable[[], float] = random.random,
    classify: Callable[[BaseException], bool] = is_retryable,
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    Args:
        fn: Zero-argument callable.
        config: Backoff settings.
        sleep: Called with a delay in seconds between attempts.
        rng: Jitter source.
        classify: Retryability classifier.

    Returns:
        The first successful return value of ``fn``.

    Raises:
        Exception: The last error raised by ``fn``.
    """
    config = config or RetryConfig()
    attempts = max(1, config.max_attempts)

    for attempt in range(attempts):
        try:
            return fn()
        except Exception as e:
            if not classify(e):
                raise
            if attempt == attempts - 1:
                logger.warning(f"Retries exhausted after {attempts} attempts: {e}")
                raise
            delay = calculate_delay(attempt, config, rng)
            logger.warning(
                f"Attempt {attempt + 1}/{attempts} failed ({type(e).__name__}: {e}), "
                f"retrying in {delay:.0f}ms"
            )
            sleep(delay / 1000)

    raise AssertionError("unreachable")


# =============================================================================
# Circuit Breaker
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for the closed/open/half_open state machine."""

    failure_threshold: int = 5
    success_threshold: int = 2
    open_duration_ms: float = 30000


class CircuitOpenError(Exception):
    """Raised without calling the dependency while its circuit is open."""

    def __init__(self, name: str, retry_in_ms: float):
        self.name = name
        self.retry_in_ms = retry_in_ms
        super().__init__(f"[Circuit] {name} is open, retry in {retry_in_ms:.0f}ms")


class CircuitBreaker:
    """Per-dependency breaker.

    States:
      CLOSED    - normal operation, consecutive failures are counted
      OPEN      - calls fail fast until open_duration_ms has elapsed
      HALF_OPEN - probe calls allowed; success_threshold successes close it,
                  any failure reopens it
    """

    def __init__(
        self,
        name: str = "dependency",
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._lock = threading.Lock()

    def _elapsed_ms(self) -> float:
        if self._last_failure_time is None:
            return float("inf")
        return (self._clock() - self._last_failure_time) * 1000

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        log = logger.warning if state is CircuitState.OPEN else logger.info
        log(f"Circuit {self.name}: {self._state.value} -> {state.value}")
        self._state = state

    def _refresh(self) -> None:
        """Apply the time-based open -> half_open transition if due."""
        if self._state is CircuitState.OPEN and self._elapsed_ms() >= self.config.open_duration_ms:
            self._success_count = 0
            self._transition(CircuitState.HALF_OPEN)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh()
            return self._state

    def stats(self) -> dict[str, Any]:
        """Snapshot of counters for diagnostics."""
        with self._lock:
            self._refresh()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "last_failure_time": self._last_failure_time,
            }

    def execute(self, fn: Callable[[], T]) -> T:
        """Call ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open (``fn`` is not called).
        """
        with self._lock:
            self._refresh()
            if self._state is CircuitState.OPEN:
                raise CircuitOpenError(
                    self.name, self.config.open_duration_ms - self._elapsed_ms()
                )

        try:
            result = fn()
        except Exception:
            self._on_failure()
            raise

        self._on_success()
        return result

    def _on_success(self) -> None:
        with self._lock:
            self._failure_count = 0
            if self._state is CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif self._failure_count >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        """Operator reset back to CLOSED."""
        with self._lock:
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._transition(CircuitState.CLOSED)


class ResilientCall:
    """Retry + circuit breaker bound to one dependency.

    Usage:
        source_call = ResilientCall("decision_source")
        decision = source_call.call(lambda: source.invoke(context, actions))
    """

    def __init__(
        self,
        name: str,
        retry: RetryConfig | None = None,
        breaker: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ):
        self.name = name
        self.retry = retry or RetryConfig()
        self.breaker = CircuitBreaker(name, breaker, clock=clock)
        self._sleep = sleep
        self._rng = rng

    def call(self, fn: Callable[[], T]) -> T:
        return with_retry(
            lambda: self.breaker.execute(fn),
            self.retry,
            sleep=self._sleep,
            rng=self._rng,
        )
