"""Removes expired sliding-window entries and empty rate-limit keys.

Scores are arrival times in seconds, the same unit the Redis limiter
writes, so ``now - retention`` is directly comparable.

A key never loses entries that are still inside its own window. The
limiter sets the key's TTL to twice the window on every check, so while
any entry is live the remaining TTL exceeds the window; the cutoff is
pushed back to ``now - PTTL`` whenever that is older than ``now - retention``.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import redis

from chat_spine.core.logging import get_logger
from chat_spine.core.store import KeySpace, scan_keys
from chat_spine.execution.sweeper import PeriodicSweeper

from .limiters import MemoryRateLimiter

logger = get_logger(__name__)


class RateLimitSweeper(PeriodicSweeper):
    """Trims every ``ratelimit:*`` sorted set and deletes the empty ones.

    When a ``memory_limiter`` is given, its idle buckets are pruned on the
    same pass.
    """

    name = "ratelimit-sweeper"

    def __init__(
        self,
        client: redis.Redis,
        keys: KeySpace | None = None,
        retention: float = 300.0,
        interval: float = 60.0,
        clock: Callable[[], float] = time.time,
        memory_limiter: MemoryRateLimiter | None = None,
        scan_count: int = 100,
        log: Any | None = None,
    ):
        super().__init__(interval, log=log or logger)
        self._client = client
        self._keys = keys or KeySpace()
        self._retention = retention
        self._clock = clock
        self._memory_limiter = memory_limiter
        self._scan_count = scan_count

    def _cutoff(self, key: str, now: float) -> float:
        ttl_ms = self._client.pttl(key)
        horizon = self._retention
        if ttl_ms > 0:
            horizon = max(horizon, ttl_ms / 1000)
        return now - horizon

    def sweep(self) -> int:
        if self._memory_limiter is not None:
            pruned = self._memory_limiter.cleanup(self._retention)
            if pruned:
                self._log.debug("ratelimit_memory_buckets_pruned", buckets=pruned)

        removed = 0
        pattern = self._keys.rate_limit_pattern
        for key in scan_keys(self._client, pattern, self._scan_count, "ratelimit_sweep_scan"):
            try:
                cutoff = self._cutoff(key, self._clock())
                pipe = self._client.pipeline(transaction=True)
                pipe.zremrangebyscore(key, "-inf", f"({cutoff}")
                pipe.zcard(key)
                _, count = pipe.execute()
                if count == 0:
                    removed += self._client.delete(key)
            except redis.RedisError as exc:
                self._log.warning("ratelimit_sweep_key_failed", key=str(key), error=str(exc))
        return removed


__all__ = ["RateLimitSweeper"]
