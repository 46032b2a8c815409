"""Bounded retries and circuit breaking for network dependencies.

Every blocking call to an external dependency (embedding API, vector
index, object storage) goes through a :class:`RetryPolicy` and, for the
embedding API and the vector index, a :class:`CircuitBreaker`.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from tenacity import (
    Retrying,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from nexusgov_rag.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential-backoff retry settings.

    ``attempts`` is the total number of tries (first call included).
    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately.
    """

    attempts: int = 3
    backoff_min: float = 0.5
    backoff_max: float = 8.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    @classmethod
    def from_settings(cls, retry_on: tuple[type[BaseException], ...] = (Exception,)) -> RetryPolicy:
        from nexusgov_rag.config import settings

        return cls(
            attempts=settings.retry_attempts,
            backoff_min=settings.retry_backoff_min,
            backoff_max=settings.retry_backoff_max,
            retry_on=retry_on,
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run *func* with retries; the last exception is re-raised unchanged."""

        def _before_sleep(retry_state) -> None:  # noqa: ANN001
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Retrying %s (attempt %d/%d): %s",
                getattr(func, "__name__", repr(func)),
                retry_state.attempt_number,
                self.attempts,
                exc,
            )

        retrying = Retrying(
            retry=retry_if_exception_type(self.retry_on) & retry_if_not_exception_type(CircuitOpenError),
            stop=stop_after_attempt(max(1, self.attempts)),
            wait=wait_exponential(multiplier=self.backoff_min, min=self.backoff_min, max=self.backoff_max),
            before_sleep=_before_sleep,
            reraise=True,
        )
        return retrying(func, *args, **kwargs)


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Thread-safe circuit breaker.

    After ``failure_threshold`` consecutive failures the circuit opens and
    calls fail fast with :class:`~nexusgov_rag.errors.CircuitOpenError`
    until ``recovery_timeout`` seconds have passed; the next call is then
    let through as a trial call (half-open) and closes the circuit on success.

    Parameters
    ----------
    name:
        Label used in logs and errors.
    failure_threshold:
        Consecutive failures that open the circuit.
    recovery_timeout:
        Seconds to wait before probing an open circuit.
    clock:
        Monotonic time source; injectable for tests.
    """

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @classmethod
    def from_settings(cls, name: str) -> CircuitBreaker:
        from nexusgov_rag.config import settings

        return cls(
            name,
            failure_threshold=settings.breaker_failure_threshold,
            recovery_timeout=settings.breaker_recovery_timeout,
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed < self.recovery_timeout:
                    raise CircuitOpenError(self.name, self.recovery_timeout - elapsed)
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit '%s' half-open, probing dependency", self.name)

        try:
            result = func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit '%s' closed after successful trial call", self.name)
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0

    def _on_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
                if self._state != CircuitState.OPEN:
                    logger.error(
                        "Circuit '%s' opened after %d consecutive failures",
                        self.name,
                        self._consecutive_failures,
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()


def guarded_call(
    func: Callable[..., T],
    *args: Any,
    retry: RetryPolicy | None = None,
    breaker: CircuitBreaker | None = None,
    **kwargs: Any,
) -> T:
    """Call *func* under the retry policy, each attempt passing through the breaker.

    Each attempt counts against the breaker, so a dependency that keeps
    failing opens the circuit even while retries are in progress.
    """

    def attempt(*a: Any, **kw: Any) -> T:
        if breaker is None:
            return func(*a, **kw)
        return breaker.call(func, *a, **kw)

    attempt.__name__ = getattr(func, "__name__", "call")

    if retry is None:
        return attempt(*args, **kwargs)
    return retry.call(attempt, *args, **kwargs)
