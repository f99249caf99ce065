"""Retry with bounded exponential backoff.

Only failures that are explicitly retryable are retried: a
:class:`~chat_spine.core.errors.ChatSpineError` whose ``retryable`` flag is
set, the builtin ``ConnectionError``/``TimeoutError``, or the exception types
listed in ``retryable_errors``. Anything else is raised on first occurrence.
A cancellation signal aborts the loop without further attempts.

Defaults: 3 attempts, 100ms base delay, x2 multiplier, capped at 5s.

Example:
    >>> from chat_spine.execution.retry import RetryContext, ExponentialBackoff
    >>> ctx = RetryContext(ExponentialBackoff())
    >>> profile = ctx.run(fetch_profile, user_id)
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from chat_spine.core.errors import OperationCancelled, is_retryable

T = TypeVar("T")

OnRetry = Callable[[int, BaseException, float], None]

# How often an async backoff checks the cancel event, in seconds
CANCEL_POLL_INTERVAL = 0.05


class RetryStrategy(ABC):
    """Decides whether a failed attempt is repeated, and after how long."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number *attempt* (0 is the first retry)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether to try again after *attempt* attempts ended with *error*."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Delay ``base_delay * multiplier ** n``, capped at ``max_delay``.

    Attributes:
        max_attempts: Total attempts, including the first one
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any single delay, in seconds
        multiplier: Growth factor between consecutive delays
        jitter: Spread delays by up to ``jitter_range`` of their value
        jitter_range: Jitter as a fraction of the delay (0.0-1.0)
        retryable_errors: Exception types to retry; None defers to
            :func:`~chat_spine.core.errors.is_retryable`
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25
    retryable_errors: tuple[type[BaseException], ...] | None = None

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * self.multiplier**attempt, self.max_delay)
        if not self.jitter:
            return delay
        spread = delay * self.jitter_range
        return max(0.0, delay + random.uniform(-spread, spread))

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_attempts:
            return False
        if error is None:
            return True
        if self.retryable_errors is not None:
            return isinstance(error, self.retryable_errors)
        return is_retryable(error)


@dataclass
class NoRetry(RetryStrategy):
    """Single attempt; every failure is final."""

    def next_delay(self, attempt: int) -> float:
        return 0.0

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Runs one callable under a strategy and remembers how it went.

    ``errors`` holds ``(attempt, error, failed_at)`` for every failed attempt.

    Example:
        >>> cancel = threading.Event()
        >>> ctx = RetryContext(ExponentialBackoff(max_attempts=3), cancel=cancel)
        >>> quote = ctx.run(exchange.get_quote, "ABC")
    """

    strategy: RetryStrategy
    on_retry: OnRetry | None = None
    cancel: threading.Event | None = None
    attempt: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)
    errors: list[tuple[int, BaseException, datetime]] = field(default_factory=list, init=False)
    _started: float = field(default_factory=time.monotonic, init=False, repr=False)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._started

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise OperationCancelled(f"retry loop cancelled after {self.attempt} attempt(s)")

    def _backoff_for(self, error: BaseException) -> float | None:
        """Record a failure; return the delay before the next attempt, or None to give up."""
        self.last_error = error
        self.errors.append((self.attempt, error, datetime.now(UTC)))

        if not self.strategy.should_retry(self.attempt, error):
            return None

        delay = self.strategy.next_delay(self.attempt - 1)
        if self.on_retry is not None:
            self.on_retry(self.attempt, error, delay)
        return delay

    def _sleep(self, delay: float) -> None:
        if self.cancel is None:
            threading.Event().wait(delay)
        elif self.cancel.wait(delay):
            self._check_cancelled()

    async def _sleep_async(self, delay: float) -> None:
        if self.cancel is None:
            await asyncio.sleep(delay)
            return
        deadline = time.monotonic() + delay
        remaining = delay
        while remaining > 0:
            self._check_cancelled()
            await asyncio.sleep(min(remaining, CANCEL_POLL_INTERVAL))
            remaining = deadline - time.monotonic()

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call ``func(*args, **kwargs)`` until it succeeds or the strategy gives up.

        Raises:
            OperationCancelled: If the cancel event fires before or between attempts
            The last error, once it is not retryable or attempts are exhausted
        """
        while True:
            self._check_cancelled()
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                delay = self._backoff_for(exc)
                if delay is None:
                    raise
            self._sleep(delay)

    async def run_async(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Awaiting variant of :meth:`run`. ``asyncio.CancelledError`` is never retried.

        The cancel event is checked every ``CANCEL_POLL_INTERVAL`` seconds
        while backing off.
        """
        while True:
            self._check_cancelled()
            self.attempt += 1
            try:
                return await func(*args, **kwargs)
            except Exception as exc:
                delay = self._backoff_for(exc)
                if delay is None:
                    raise
            await self._sleep_async(delay)


def with_retry(
    strategy: RetryStrategy | None = None,
    on_retry: OnRetry | None = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Wrap a function (sync or async) so each call runs in a fresh :class:`RetryContext`.

    Example:
        >>> @with_retry(ExponentialBackoff(max_attempts=3))
        ... def load_profile(user_id):
        ...     return client.get(user_id)
    """
    chosen = strategy if strategy is not None else ExponentialBackoff()

    def wrap(func: Callable[..., T]) -> Callable[..., T]:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def call_async(*args: Any, **kwargs: Any) -> T:
                return await RetryContext(chosen, on_retry).run_async(func, *args, **kwargs)

            return call_async  # type: ignore[return-value]

        @functools.wraps(func)
        def call(*args: Any, **kwargs: Any) -> T:
            return RetryContext(chosen, on_retry).run(func, *args, **kwargs)

        return call

    return wrap


__all__ = [
    "RetryStrategy",
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
    "with_retry",
]
