"""
Circuit breaker for the external track catalog

Only outages trip the breaker: transport failures, exhausted retries, 5xx
and unreadable payloads. A 4xx other than 429 means the catalog answered and
the request itself was bad (an unknown or malformed artist id), so it counts
as a sign of life instead.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from .errors import CircuitBreakerOpenException
from .metrics import catalog_circuit_state

logger = structlog.get_logger(__name__)


class CircuitBreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_GAUGE_VALUES = {
    CircuitBreakerState.CLOSED: 0,
    CircuitBreakerState.HALF_OPEN: 1,
    CircuitBreakerState.OPEN: 2,
}


def counts_as_outage(error: BaseException) -> bool:
    """True when an error says the catalog itself is unhealthy."""
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return True


class CircuitBreaker:
    """
    Consecutive-outage breaker

    Opens after failure_threshold outages in a row. Once timeout_seconds have
    passed since the last outage, calls are let through in HALF_OPEN;
    success_threshold answers close it, one more outage reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout_seconds: float = 60,
        success_threshold: int = 2,
        name: str = "catalog",
        clock: Callable[[], float] = time.monotonic,
        is_outage: Callable[[BaseException], bool] = counts_as_outage
    ):
        self.failure_threshold = failure_threshold
        self.timeout_seconds = timeout_seconds
        self.success_threshold = success_threshold
        self.name = name
        self._clock = clock
        self._is_outage = is_outage

        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        catalog_circuit_state.labels(name=name).set(_GAUGE_VALUES[self.state])

    @property
    def is_open(self) -> bool:
        return self.state == CircuitBreakerState.OPEN

    def _transition(self, state: CircuitBreakerState, **log_context) -> None:
        previous, self.state = self.state, state
        catalog_circuit_state.labels(name=self.name).set(_GAUGE_VALUES[state])
        log = logger.error if state == CircuitBreakerState.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            name=self.name,
            previous=previous.value,
            state=state.value,
            **log_context
        )

    def _admit(self) -> None:
        if self.state != CircuitBreakerState.OPEN:
            return
        elapsed = None if self.last_failure_time is None else self._clock() - self.last_failure_time
        if elapsed is None or elapsed >= self.timeout_seconds:
            self.success_count = 0
            self._transition(CircuitBreakerState.HALF_OPEN)
            return
        raise CircuitBreakerOpenException(
            f"Circuit breaker {self.name} is OPEN, retry in {self.timeout_seconds - elapsed:.0f}s"
        )

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run func unless the breaker is open; outages are counted, other errors are not."""
        self._admit()

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self._is_outage(e):
                self.record_failure(e)
            else:
                self.record_success()
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        if self.state != CircuitBreakerState.HALF_OPEN:
            self.failure_count = 0
            return

        self.success_count += 1
        if self.success_count >= self.success_threshold:
            self.failure_count = 0
            self.success_count = 0
            self._transition(CircuitBreakerState.CLOSED)

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        reason = type(error).__name__ if error is not None else None

        if self.state == CircuitBreakerState.HALF_OPEN:
            self.success_count = 0
            self._transition(CircuitBreakerState.OPEN, reason=reason)
        elif self.state == CircuitBreakerState.CLOSED and self.failure_count >= self.failure_threshold:
            self._transition(CircuitBreakerState.OPEN, failure_count=self.failure_count, reason=reason)

    def get_state(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.failure_threshold,
            "last_failure_time": self.last_failure_time
        }
