"""Retry and circuit-breaking helpers for calling the service HTTP API."""
from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Callable, Iterable, Type, TypeVar

from provisioner.common.logging import json_log
from provisioner.core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_with_backoff(
    func: Callable[[], T],
    *,
    attempts: int = 3,
    delay: float = 1.0,
    max_delay: float = 30.0,
    exceptions: Iterable[Type[BaseException]] | Type[BaseException] = Exception,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` with exponential backoff between failed attempts.

    The last failure is re-raised unchanged once ``attempts`` is exhausted.
    :class:`CircuitOpenError` is never retried.
    """

    if isinstance(exceptions, type):
        exc_types: tuple[Type[BaseException], ...] = (exceptions,)
    else:
        exc_types = tuple(exceptions)

    backoff = delay
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except CircuitOpenError:
            raise
        except exc_types as exc:
            if attempt == attempts:
                raise
            json_log(
                logger,
                logging.WARNING,
                "client.retry",
                attempt=attempt,
                attempts=attempts,
                delay_s=backoff,
                error=str(exc),
            )
            sleep(backoff)
            backoff = min(backoff * 2, max_delay)
    raise RuntimeError("retry_with_backoff requires attempts >= 1")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Three-state circuit breaker.

    ``closed`` counts consecutive failures and opens at ``failure_threshold``.
    ``open`` rejects calls until ``reset_timeout`` has elapsed since it opened, then
    becomes ``half_open`` and lets a single trial call through. A successful trial
    closes the circuit; a failed one re-opens it with a fresh timestamp.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        name: str = "service",
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.name = name
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._advance()
            return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _advance(self) -> None:
        if (
            self._state is CircuitState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._transition(CircuitState.HALF_OPEN)

    def _transition(self, state: CircuitState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        if state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif state is CircuitState.CLOSED:
            self._opened_at = None
            self._failures = 0
        self._trial_in_flight = False
        json_log(
            logger,
            logging.WARNING if state is CircuitState.OPEN else logging.INFO,
            "circuit.transition",
            circuit=self.name,
            previous=previous.value,
            state=state.value,
        )

    def _before_call(self) -> None:
        with self._lock:
            self._advance()
            if self._state is CircuitState.OPEN:
                raise CircuitOpenError(
                    f"Circuit '{self.name}' is open; calls are suspended.",
                    hint=f"Retry after {self.reset_timeout:g}s.",
                )
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(f"Circuit '{self.name}' is half-open; a trial call is in flight.")
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
            self._failures = 0

    def record_failure(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                return
            self._failures += 1
            if self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._transition(CircuitState.OPEN)

    def call(self, func: Callable[[], T]) -> T:
        """Invoke ``func`` respecting circuit state."""

        self._before_call()
        try:
            result = func()
        except Exception:
            self.record_failure()
            raise
        finally:
            # An interrupted trial must not leave the half-open slot taken.
            with self._lock:
                self._trial_in_flight = False
        self.record_success()
        return result


__all__ = ["CircuitBreaker", "CircuitState", "retry_with_backoff"]
