"""
Shared store access: client construction, key namespaces, error wrapping.

The remote key-value store (Redis) is the single source of truth for all
three coordination primitives. This module owns the three things they must
agree on:

- **Key space:** every key is built by :class:`KeySpace`, so the FSM,
  limiters and idempotency manager can never collide.
- **Client:** :func:`create_redis_client` builds a ``redis.Redis`` from a URL.
- **Errors:** :func:`store_errors` turns any ``redis.RedisError`` into a
  :class:`~chat_spine.core.errors.StoreUnavailableError` with the cause
  chained, so callers handle exactly one backend error type.

Architecture:
    ::

        {prefix}fsm:state:{entity_id}        string  JSON EntityState
        {prefix}fsm:lock:{entity_id}         string  short-TTL lock
        {prefix}ratelimit:{scope}:{id}       zset    request tokens by time
        {prefix}idempotency:record:{key}     hash    {status, result}
        {prefix}idempotency:lock:{key}       string  safety lock

Examples:
    >>> keys = KeySpace(prefix="bot:")
    >>> keys.state(42)
    'bot:fsm:state:42'
    >>> keys.entity_id_from_state_key("bot:fsm:state:42")
    42

Tags:
    redis, key-space, chat-spine, store

Doc-Types:
    - API Reference
    - Infrastructure Guide
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import redis

from .errors import StoreUnavailableError


@dataclass(frozen=True)
class KeySpace:
    """Builds every key the coordination primitives read or write."""

    prefix: str = ""

    # -- FSM ---------------------------------------------------------------

    def state(self, entity_id: int) -> str:
        return f"{self.prefix}fsm:state:{entity_id}"

    @property
    def state_pattern(self) -> str:
        return f"{self.prefix}fsm:state:*"

    def entity_lock(self, entity_id: int) -> str:
        return f"{self.prefix}fsm:lock:{entity_id}"

    def entity_id_from_state_key(self, key: str | bytes) -> int:
        """Parse the entity id back out of a state key.

        Raises:
            ValueError: If the key is not a state key or the id is not an integer.
        """
        if isinstance(key, bytes):
            key = key.decode()
        head = f"{self.prefix}fsm:state:"
        if not key.startswith(head):
            raise ValueError(f"not a state key: {key!r}")
        return int(key[len(head):])

    # -- Rate limiting -----------------------------------------------------

    def rate_limit(self, key: str) -> str:
        return f"{self.prefix}ratelimit:{key}"

    @property
    def rate_limit_pattern(self) -> str:
        return f"{self.prefix}ratelimit:*"

    # -- Idempotency -------------------------------------------------------

    def idempotency_record(self, key: str) -> str:
        return f"{self.prefix}idempotency:record:{key}"

    def idempotency_lock(self, key: str) -> str:
        return f"{self.prefix}idempotency:lock:{key}"

    @property
    def idempotency_lock_pattern(self) -> str:
        return f"{self.prefix}idempotency:lock:*"


def create_redis_client(url: str, **kwargs: Any) -> redis.Redis:
    """Create a ``redis.Redis`` client that returns ``str`` values."""
    kwargs.setdefault("decode_responses", True)
    return redis.from_url(url, **kwargs)


@contextmanager
def store_errors(operation: str, **fields: Any) -> Iterator[None]:
    """Re-raise ``redis.RedisError`` as :class:`StoreUnavailableError`.

    Example:
        with store_errors("state_get", entity_id=42):
            raw = client.get(keys.state(42))
    """
    try:
        yield
    except redis.RedisError as exc:
        raise StoreUnavailableError(
            f"store operation {operation!r} failed: {exc}",
            context={"operation": operation, **fields},
            cause=exc,
        ) from exc


def scan_keys(client: redis.Redis, pattern: str, count: int, operation: str) -> Iterator[str]:
    """Yield keys matching *pattern* as the cursor advances.

    Each cursor step runs under :func:`store_errors`, so a failure mid-scan
    surfaces as :class:`StoreUnavailableError` after the keys already yielded.
    """
    with store_errors(operation):
        cursor = iter(client.scan_iter(match=pattern, count=count))
    while True:
        with store_errors(operation):
            key = next(cursor, None)
        if key is None:
            return
        yield key


def to_millis(seconds: float) -> int:
    """Seconds → whole milliseconds (at least 1) for ``PX`` / ``PEXPIRE``."""
    return max(1, int(round(seconds * 1000)))


__all__ = ["KeySpace", "create_redis_client", "scan_keys", "store_errors", "to_millis"]
