"""Circuit breaker for the embedding API (SD-006).

While NIM embeddings keep failing, candidate retrieval should stop waiting on
each doomed call and go straight to exact and fuzzy matching. An open breaker
raises ``CircuitBreakerOpen``, which the retriever treats as a degradation.

    breaker = get_circuit_breaker("nvidia_embedding", failure_threshold=5)

    async with breaker:
        vectors = await provider.embed([text], input_type="query")

State changes happen synchronously between awaits, so one event loop needs
no lock around them.
"""

import time
from enum import Enum
from typing import Iterable, Optional, Type

from utils.logging import get_logger

logger = get_logger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """The guarded dependency is considered down; the call was not made."""

    def __init__(self, name: str, time_remaining: float):
        self.name = name
        self.time_remaining = time_remaining
        super().__init__(f"Circuit breaker '{name}' is open, retry in {time_remaining:.1f}s")


class CircuitBreaker:
    """Counts consecutive failures of one dependency and fails fast when it is down.

    Args:
        name: Identifier used in logs and in the registry
        failure_threshold: Consecutive tripping failures that open the circuit
        recovery_timeout: Seconds an open circuit waits before letting a probe through
        success_threshold: Successful probes in HALF_OPEN needed to close again
        exceptions: Exception types that count as failures (None means all)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        success_threshold: int = 2,
        exceptions: Optional[Iterable[Type[Exception]]] = None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.exceptions = tuple(exceptions) if exceptions is not None else None

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._opened_at: Optional[float] = None
        self._total_rejections = 0

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state.value})"

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self.time_until_retry == 0.0:
            self._state = CircuitState.HALF_OPEN
            self._probe_successes = 0
            logger.info(f"Circuit breaker '{self.name}' half-open, probing dependency")
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    @property
    def time_until_retry(self) -> float:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    @property
    def total_rejections(self) -> int:
        return self._total_rejections

    def snapshot(self) -> dict:
        """State for log ``extra`` fields when retrieval degrades."""
        return {
            "breaker": self.name,
            "state": self.state.value,
            "failures": self._failures,
            "retry_in": round(self.time_until_retry, 1),
        }

    def _open(self, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._probe_successes = 0
        logger.warning(f"Circuit breaker '{self.name}' opened: {reason}")

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._probe_successes += 1
            if self._probe_successes >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failures = 0
                logger.info(f"Circuit breaker '{self.name}' closed, dependency recovered")
        else:
            self._failures = 0

    def record_failure(self, exc: Exception) -> None:
        if self.exceptions is not None and not isinstance(exc, self.exceptions):
            return

        self._failures += 1
        if self._state == CircuitState.HALF_OPEN:
            self._open(f"probe failed with {type(exc).__name__}: {exc}")
        elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
            self._open(f"{self._failures} consecutive failures")

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._probe_successes = 0
        self._opened_at = None

    async def __aenter__(self) -> "CircuitBreaker":
        if self.state == CircuitState.OPEN:
            self._total_rejections += 1
            raise CircuitBreakerOpen(self.name, self.time_until_retry)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        if exc_val is None:
            self.record_success()
        elif isinstance(exc_val, Exception):
            self.record_failure(exc_val)
        return False


_circuit_breakers: dict[str, CircuitBreaker] = {}


def get_circuit_breaker(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 30.0,
    success_threshold: int = 2,
    exceptions: Optional[Iterable[Type[Exception]]] = None,
) -> CircuitBreaker:
    """Return the process-wide breaker for ``name``, creating it on first use.

    Every EmbeddingService shares the breaker, so one failing request path
    protects all the others.
    """
    breaker = _circuit_breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            success_threshold=success_threshold,
            exceptions=exceptions,
        )
        _circuit_breakers[name] = breaker
    return breaker


def reset_all_circuit_breakers() -> None:
    for breaker in _circuit_breakers.values():
        breaker.reset()
