"""Circuit breaker for calls to unreliable dependencies.

Fails fast while a dependency is misbehaving instead of stacking up slow
failures behind it.

States:
    CLOSED: calls pass through and are counted
    OPEN: calls are rejected until ``recovery_timeout`` has elapsed
    HALF_OPEN: up to ``half_open_max_calls`` probes may run at once

The circuit opens on failure *rate*, not a failure count: once at least
``minimum_requests`` have been seen since the last transition and the
fraction that failed reaches ``failure_rate_threshold``. All counters reset
on every state transition. One failed probe reopens the circuit;
``success_threshold`` successful probes close it.

Example:
    >>> from chat_spine.execution.circuit_breaker import CircuitBreaker
    >>> breaker = CircuitBreaker(name="exchange-api", minimum_requests=10)
    >>> quote = breaker.call(exchange.get_quote, "ABC")
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from chat_spine.core.errors import CircuitOpenError
from chat_spine.core.logging import get_logger

T = TypeVar("T")

logger = get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitStats:
    """Counters over the breaker's lifetime; never reset by transitions."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    state_changes: int = 0
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None
    last_state_change_at: datetime | None = None

    @property
    def failure_rate(self) -> float:
        """Failed share of completed calls, 0.0-1.0."""
        completed = self.successful_requests + self.failed_requests
        return self.failed_requests / completed if completed else 0.0


@dataclass
class _Window:
    """Counters for the current state only."""

    requests: int = 0
    failures: int = 0
    successes: int = 0
    probes_in_flight: int = 0
    opened_at: float | None = None


@dataclass
class CircuitBreaker:
    """Error-rate circuit breaker.

    Attributes:
        name: Identifier used in logs and in :class:`CircuitOpenError`
        failure_rate_threshold: Failure fraction that opens the circuit
        minimum_requests: Calls needed before the rate is evaluated
        recovery_timeout: Seconds to stay open before probing
        half_open_max_calls: Concurrent probes allowed while half-open
        success_threshold: Probe successes needed to close again
        clock: Monotonic time source in seconds
    """

    name: str = "default"
    failure_rate_threshold: float = 0.5
    minimum_requests: int = 10
    recovery_timeout: float = 30.0
    half_open_max_calls: int = 3
    success_threshold: int = 3
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    _window: _Window = field(default_factory=_Window, init=False)
    _stats: CircuitStats = field(default_factory=CircuitStats, init=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def _enter(self, state: CircuitState) -> None:
        previous, self._state = self._state, state
        self._window = _Window(opened_at=self.clock() if state is CircuitState.OPEN else None)
        self._stats.state_changes += 1
        self._stats.last_state_change_at = datetime.now(UTC)
        logger.info(
            "circuit_state_changed",
            circuit=self.name,
            from_state=previous.value,
            to_state=state.value,
        )

    def _recovery_due(self) -> bool:
        opened_at = self._window.opened_at or 0.0
        return self.clock() - opened_at >= self.recovery_timeout

    def allow_request(self) -> bool:
        """Whether a call may proceed now.

        A call admitted while half-open holds a probe slot until it is
        reported through :meth:`record_success` or :meth:`record_failure`,
        or abandoned through :meth:`release_probe`.
        """
        with self._lock:
            self._stats.total_requests += 1
            if self._state is CircuitState.OPEN and self._recovery_due():
                self._enter(CircuitState.HALF_OPEN)

            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN and self._window.probes_in_flight < self.half_open_max_calls:
                self._window.probes_in_flight += 1
                return True

            self._stats.rejected_requests += 1
            return False

    def record_success(self) -> None:
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.last_success_at = datetime.now(UTC)
            window = self._window
            if self._state is CircuitState.CLOSED:
                window.requests += 1
                window.successes += 1
            elif self._state is CircuitState.HALF_OPEN:
                window.probes_in_flight = max(0, window.probes_in_flight - 1)
                window.successes += 1
                if window.successes >= self.success_threshold:
                    self._enter(CircuitState.CLOSED)

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._stats.failed_requests += 1
            self._stats.last_failure_at = datetime.now(UTC)
            window = self._window
            if self._state is CircuitState.HALF_OPEN:
                self._enter(CircuitState.OPEN)
                return
            if self._state is not CircuitState.CLOSED:
                return

            window.requests += 1
            window.failures += 1
            if window.requests < self.minimum_requests:
                return
            if window.failures / window.requests >= self.failure_rate_threshold:
                logger.warning(
                    "circuit_opening",
                    circuit=self.name,
                    failures=window.failures,
                    requests=window.requests,
                    error=repr(error) if error is not None else None,
                )
                self._enter(CircuitState.OPEN)

    def release_probe(self) -> None:
        """Give back a half-open probe slot without recording an outcome.

        For admitted calls that never finished, e.g. cancelled tasks.
        """
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._window.probes_in_flight = max(0, self._window.probes_in_flight - 1)

    def reset(self) -> None:
        """Close the circuit and clear the current counters."""
        with self._lock:
            self._enter(CircuitState.CLOSED)

    def force_open(self) -> None:
        """Open the circuit now, e.g. during a known dependency outage."""
        with self._lock:
            self._enter(CircuitState.OPEN)

    def _rejection(self) -> CircuitOpenError:
        return CircuitOpenError(
            f"circuit {self.name!r} is {self.state.value}, call rejected",
            context={"circuit": self.name, "state": self.state.value},
        )

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``func(*args, **kwargs)`` and report its outcome.

        Raises:
            CircuitOpenError: If the circuit rejects the call; ``func`` is not invoked
        """
        if not self.allow_request():
            raise self._rejection()
        try:
            result = func(*args, **kwargs)
        except Exception as exc:
            self.record_failure(exc)
            raise
        except BaseException:
            self.release_probe()
            raise
        self.record_success()
        return result

    async def call_async(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if not self.allow_request():
            raise self._rejection()
        try:
            result = await func(*args, **kwargs)
        except Exception as exc:
            self.record_failure(exc)
            raise
        except BaseException:
            self.release_probe()
            raise
        self.record_success()
        return result


__all__ = ["CircuitState", "CircuitStats", "CircuitBreaker", "CircuitOpenError"]
