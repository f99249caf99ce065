"""Rate Limiting — sliding-window limiters for inbound traffic.

Manifesto:
Every replica must agree on how many requests an entity has made, so the
authoritative count lives in Redis. When Redis is unreachable the bot keeps
serving, but with a stricter per-process budget instead of no limit at all.

ARCHITECTURE
────────────
::

    RateLimiter (ABC)
      ├── RedisRateLimiter     ─ exact, shared sliding window (sorted set)
      ├── MemoryRateLimiter    ─ approximate, per-process sliding window
      └── AdaptiveRateLimiter  ─ Redis first, memory on StoreUnavailableError

    check(key, limit, window) -> RateLimitResult
      allowed=False            request exceeded the limit
      degraded=True            answered by the in-process fallback
      StoreUnavailableError    exact limiter could not reach Redis

Related modules:
    policy.py   — which scopes apply to an inbound event
    sweeper.py  — removes expired window entries

Example::

    limiter = AdaptiveRateLimiter(RedisRateLimiter(client), MemoryRateLimiter())
    result = limiter.check("user:42", limit=30, window=60)
    if not result.allowed:
        raise RateLimitExceededError("user", retry_after=result.retry_after)

Tags:
    chat-spine, rate-limit, sliding-window, redis, fallback

Doc-Types:
    api-reference
"""

from __future__ import annotations

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

import redis

from chat_spine.core.errors import StoreUnavailableError
from chat_spine.core.logging import get_logger
from chat_spine.core.store import KeySpace, store_errors, to_millis


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of one limiter check.

    Attributes:
        allowed: Whether the request may proceed
        remaining: Requests left in the current window
        reset_at: When a full window will have passed
        limit: The limit that was applied (the reduced one when degraded)
        backend: Which limiter answered ("redis" or "memory")
        degraded: True when answered by the fallback after a backend failure
        retry_after: Suggested wait in seconds when rejected
    """

    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int
    backend: str
    degraded: bool = False
    retry_after: float | None = None


class RateLimiter(ABC):
    """Abstract base for rate limiters."""

    @abstractmethod
    def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        """Record one request for *key* and decide whether it is allowed.

        Args:
            key: Scope key, e.g. ``"user:42"``
            limit: Maximum requests per window
            window: Window size in seconds

        Returns:
            The limiter's verdict
        """
        ...


class RedisRateLimiter(RateLimiter):
    """Exact sliding window shared by every replica.

    Each request is a sorted-set member scored by its arrival time in
    seconds. One MULTI batch trims entries older than the window, adds the
    request, counts, and refreshes the key's expiry to twice the window.

    With ``penalize_rejected=False`` a rejected request removes its own
    member again, so a client hammering the limit cannot extend its lockout.
    """

    backend = "redis"

    def __init__(
        self,
        client: redis.Redis,
        keys: KeySpace | None = None,
        clock: Callable[[], float] = time.time,
        penalize_rejected: bool = False,
        log: Any | None = None,
    ):
        self._client = client
        self._keys = keys or KeySpace()
        self._clock = clock
        self._penalize_rejected = penalize_rejected
        self._log = log or get_logger(__name__)

    def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        now = self._clock()
        reset_at = datetime.fromtimestamp(now + window, UTC)

        if limit <= 0:
            return RateLimitResult(False, 0, reset_at, limit, self.backend, retry_after=window)

        redis_key = self._keys.rate_limit(key)
        member = uuid.uuid4().hex

        with store_errors("ratelimit_check", key=key):
            pipe = self._client.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", f"({now - window}")
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.pexpire(redis_key, to_millis(window * 2))
            _, _, count, _ = pipe.execute()

        allowed = count <= limit
        if not allowed and not self._penalize_rejected:
            try:
                self._client.zrem(redis_key, member)
            except redis.RedisError as exc:
                self._log.warning("ratelimit_token_rollback_failed", key=key, error=str(exc))

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            limit=limit,
            backend=self.backend,
            retry_after=None if allowed else window,
        )


@dataclass
class _Bucket:
    requests: deque[float] = field(default_factory=deque)
    window: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock)


class MemoryRateLimiter(RateLimiter):
    """Per-process sliding window.

    Only approximate across replicas: each process counts the traffic it
    sees. Rejected requests are not recorded.

    The bucket map has its own lock for lookup and creation; each bucket has
    a lock covering prune, count and append.
    """

    backend = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._lock = threading.Lock()

    def _bucket(self, key: str) -> _Bucket:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = _Bucket()
            return bucket

    def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        reset_at = utcnow() + timedelta(seconds=window)
        if limit <= 0:
            return RateLimitResult(False, 0, reset_at, limit, self.backend, retry_after=window)

        bucket = self._bucket(key)
        with bucket.lock:
            now = self._clock()
            bucket.window = max(bucket.window, window)
            cutoff = now - window
            while bucket.requests and bucket.requests[0] < cutoff:
                bucket.requests.popleft()

            count = len(bucket.requests)
            allowed = count < limit
            if allowed:
                bucket.requests.append(now)
                count += 1

        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            limit=limit,
            backend=self.backend,
            retry_after=None if allowed else window,
        )

    def cleanup(self, max_age: float) -> int:
        """Drop buckets with no request in the last *max_age* seconds.

        A bucket whose window is longer than *max_age* is kept until that
        window has passed.

        Returns:
            Number of buckets removed
        """
        if max_age <= 0:
            return 0

        now = self._clock()
        removed = 0
        with self._lock:
            for key in list(self._buckets):
                bucket = self._buckets[key]
                with bucket.lock:
                    horizon = max(max_age, bucket.window)
                    if not bucket.requests or bucket.requests[-1] < now - horizon:
                        del self._buckets[key]
                        removed += 1
        return removed

    def bucket_count(self) -> int:
        with self._lock:
            return len(self._buckets)


class AdaptiveRateLimiter(RateLimiter):
    """Primary limiter with a stricter in-process fallback.

    Only :class:`StoreUnavailableError` triggers the fallback; a rejection
    by the primary is final. The fallback runs with
    ``max(1, int(limit * fallback_ratio))``.
    """

    def __init__(
        self,
        primary: RateLimiter,
        fallback: RateLimiter,
        fallback_ratio: float = 0.5,
        log: Any | None = None,
    ):
        self._primary = primary
        self._fallback = fallback
        self._fallback_ratio = fallback_ratio
        self._log = log or get_logger(__name__)

    def fallback_limit(self, limit: int) -> int:
        return max(1, int(limit * self._fallback_ratio))

    def check(self, key: str, limit: int, window: float) -> RateLimitResult:
        try:
            return self._primary.check(key, limit, window)
        except StoreUnavailableError as exc:
            self._log.warning("ratelimit_primary_failed", key=key, error=str(exc))

        result = self._fallback.check(key, self.fallback_limit(limit), window)
        return replace(result, degraded=True)


__all__ = [
    "RateLimitResult",
    "RateLimiter",
    "RedisRateLimiter",
    "MemoryRateLimiter",
    "AdaptiveRateLimiter",
]
