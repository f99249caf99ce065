"""Entity lock: one short-TTL mutual-exclusion lock per entity in Redis.

At most one caller across all replicas holds an entity's lock at a time.
The lock expires on its own after ``ttl`` seconds, so a crashed holder
self-heals.

ARCHITECTURE
────────────
::

    EntityLock(client, keys, ttl=5.0)
      ├── .acquire(entity_id)    ─ SET key token NX PX ttl, never blocks
      ├── .release(entity_id)    ─ best-effort DEL
      ├── .is_locked(entity_id)  ─ check without acquiring
      └── .held(entity_id)       ─ context manager, raises StateLockedError

Release does not check ownership: a holder that outlives its TTL can delete
a successor's lock. Keep ``ttl`` well above the longest critical section.

Example::

    lock = EntityLock(client, KeySpace())
    if lock.acquire(42):
        try:
            mutate_state(42)
        finally:
            lock.release(42)
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import redis

from chat_spine.core.errors import StateLockedError
from chat_spine.core.logging import get_logger
from chat_spine.core.store import KeySpace, store_errors, to_millis


class EntityLock:
    """Guards against concurrent mutation of one entity's state."""

    def __init__(
        self,
        client: redis.Redis,
        keys: KeySpace | None = None,
        ttl: float = 5.0,
        log: Any | None = None,
    ):
        """
        Args:
            client: Redis client shared by all replicas.
            keys: Key space (defaults to an unprefixed one).
            ttl: Lock lifetime in seconds.
            log: Optional structlog logger.
        """
        self._client = client
        self._keys = keys or KeySpace()
        self._ttl = ttl
        self._log = log or get_logger(__name__)

    @property
    def ttl(self) -> float:
        return self._ttl

    def acquire(self, entity_id: int, ttl: float | None = None) -> bool:
        """Try to acquire the lock for *entity_id*.

        Returns:
            True if acquired, False if another caller holds it

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        key = self._keys.entity_lock(entity_id)
        token = uuid.uuid4().hex
        with store_errors("lock_acquire", entity_id=entity_id):
            acquired = self._client.set(key, token, nx=True, px=to_millis(ttl or self._ttl))
        return bool(acquired)

    def release(self, entity_id: int) -> None:
        """Release the lock. Failures are logged, the TTL cleans up."""
        try:
            self._client.delete(self._keys.entity_lock(entity_id))
        except redis.RedisError as exc:
            self._log.warning("state_lock_release_failed", entity_id=entity_id, error=str(exc))

    def is_locked(self, entity_id: int) -> bool:
        with store_errors("lock_check", entity_id=entity_id):
            return bool(self._client.exists(self._keys.entity_lock(entity_id)))

    @contextmanager
    def held(self, entity_id: int, ttl: float | None = None) -> Iterator[None]:
        """Hold the lock for the duration of the block.

        Raises:
            StateLockedError: If the lock is already held
        """
        if not self.acquire(entity_id, ttl):
            raise StateLockedError(entity_id=entity_id)
        try:
            yield
        finally:
            self.release(entity_id)


__all__ = ["EntityLock"]
