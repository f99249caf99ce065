"""
Idempotent execution: run an operation at most once per key.

Inbound events can be delivered more than once (client retries, webhook
redelivery, two replicas receiving the same update). Wrapping the handler in
:meth:`IdempotencyManager.execute` guarantees that for a given operation key
the handler body runs at most once successfully, and every later delivery is
answered from the stored result.

Architecture:
    ::

        execute(key, ttl, operation)
          │
          ├── cancelled? ───────────────────────► OperationCancelled
          │
          ├── SET idempotency:lock:{key} NX PX lock_ttl
          │     ├── acquired:
          │     │     record completed? ────────► cached result (from_cache)
          │     │     HSET status=processing
          │     │     operation()  ── fails ──► discard marker, release, re-raise
          │     │     HSET status=completed result=<json>; PEXPIRE ttl
          │     │     release lock ─────────────► fresh result
          │     │
          │     └── held by someone else:
          │           record completed? ────────► cached result (from_cache)
          │           max_wait elapsed? ────────► OperationInProgressError
          │           wait poll_interval, loop
          │
        IdempotencySweeper: deletes orphaned locks (no TTL / TTL too long)

    Failures are never cached, so a failed key may be attempted again.

Examples:
    >>> manager = IdempotencyManager(RedisIdempotencyStore(client))
    >>> outcome = manager.execute("k1", 3600, lambda: 42)
    >>> outcome.result, outcome.from_cache
    (42, False)
    >>> manager.execute("k1", 3600, lambda: 99).result
    42

Tags:
    idempotency, deduplication, redis, at-most-once, chat-spine

Doc-Types:
    - API Reference
    - Operation Patterns Guide
"""

from __future__ import annotations

import hashlib
import json
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import redis

from chat_spine.core.errors import OperationCancelled, OperationInProgressError
from chat_spine.core.logging import get_logger
from chat_spine.core.store import KeySpace, scan_keys, store_errors, to_millis

from .sweeper import PeriodicSweeper

_UNSET: Any = object()


class IdempotencyStatus(str, Enum):
    """Lifecycle of an idempotency record."""

    PROCESSING = "processing"
    COMPLETED = "completed"


@dataclass(frozen=True)
class IdempotencyRecord:
    """Stored outcome for one operation key."""

    status: IdempotencyStatus
    result_json: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status == IdempotencyStatus.COMPLETED

    def result(self) -> Any:
        """Decode the stored result (``None`` when nothing was stored)."""
        if self.result_json is None:
            return None
        return json.loads(self.result_json)


@dataclass(frozen=True)
class IdempotentResult:
    """What :meth:`IdempotencyManager.execute` hands back."""

    result: Any
    from_cache: bool


def _text(value: str | bytes | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode()
    return value


class RedisIdempotencyStore:
    """Idempotency records (hashes) and safety locks (strings) in Redis.

    Records and locks live in separate namespaces, so the lock sweeper can
    never delete a completed record.
    """

    def __init__(self, client: redis.Redis, keys: KeySpace | None = None, log: Any | None = None):
        self._client = client
        self._keys = keys or KeySpace()
        self._log = log or get_logger(__name__)

    def acquire_lock(self, key: str, ttl: float) -> bool:
        with store_errors("idempotency_lock", operation_key=key):
            acquired = self._client.set(
                self._keys.idempotency_lock(key), uuid.uuid4().hex, nx=True, px=to_millis(ttl)
            )
        return bool(acquired)

    def release_lock(self, key: str) -> None:
        try:
            self._client.delete(self._keys.idempotency_lock(key))
        except redis.RedisError as exc:
            self._log.warning("idempotency_lock_release_failed", operation_key=key, error=str(exc))

    def get(self, key: str) -> IdempotencyRecord | None:
        with store_errors("idempotency_get", operation_key=key):
            raw = self._client.hgetall(self._keys.idempotency_record(key))
        if not raw:
            return None

        data = {_text(k): _text(v) for k, v in raw.items()}
        try:
            status = IdempotencyStatus(data.get("status"))
        except ValueError:
            self._log.warning("idempotency_record_invalid", operation_key=key, status=data.get("status"))
            return None
        return IdempotencyRecord(status=status, result_json=data.get("result"))

    def mark_processing(self, key: str, ttl: float) -> None:
        record_key = self._keys.idempotency_record(key)
        with store_errors("idempotency_mark_processing", operation_key=key):
            pipe = self._client.pipeline(transaction=True)
            pipe.hset(record_key, "status", IdempotencyStatus.PROCESSING.value)
            pipe.pexpire(record_key, to_millis(ttl))
            pipe.execute()

    def complete(self, key: str, result_json: str, ttl: float) -> None:
        record_key = self._keys.idempotency_record(key)
        with store_errors("idempotency_complete", operation_key=key):
            pipe = self._client.pipeline(transaction=True)
            pipe.hset(
                record_key,
                mapping={"status": IdempotencyStatus.COMPLETED.value, "result": result_json},
            )
            pipe.pexpire(record_key, to_millis(ttl))
            pipe.execute()

    def discard(self, key: str) -> None:
        """Drop the record. Best effort: the processing marker expires anyway."""
        try:
            self._client.delete(self._keys.idempotency_record(key))
        except redis.RedisError as exc:
            self._log.warning("idempotency_discard_failed", operation_key=key, error=str(exc))


class IdempotencyManager:
    """Executes operations at most once per key.

    Args:
        store: Record/lock store shared by all replicas.
        lock_ttl: Safety lock lifetime; bounds how long a crashed run blocks the key.
        poll_interval: Wait between checks while another caller holds the key.
        max_wait: Give up with :class:`OperationInProgressError` after this many
            seconds. ``None`` waits until the holder finishes or its lock expires.
        clock: Monotonic time source used for ``max_wait``.
    """

    def __init__(
        self,
        store: RedisIdempotencyStore,
        lock_ttl: float = 300.0,
        poll_interval: float = 0.1,
        max_wait: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        log: Any | None = None,
    ):
        self._store = store
        self._lock_ttl = lock_ttl
        self._poll_interval = poll_interval
        self._max_wait = max_wait
        self._clock = clock
        self._log = log or get_logger(__name__)

    def execute(
        self,
        key: str,
        ttl: float,
        operation: Callable[[], Any],
        *,
        cancel: threading.Event | None = None,
        max_wait: float | None = _UNSET,
    ) -> IdempotentResult:
        """Run *operation* unless a completed result for *key* already exists.

        The result must be JSON-serializable; a serialization error counts as
        a failure and nothing is stored.

        Raises:
            OperationCancelled: If *cancel* fires before the key is resolved
            OperationInProgressError: If *max_wait* elapses while another caller runs
            StoreUnavailableError: If the store cannot be reached
            Whatever *operation* raises, after the marker is discarded
        """
        if max_wait is _UNSET:
            max_wait = self._max_wait
        deadline = None if max_wait is None else self._clock() + max_wait
        waiter = cancel or threading.Event()

        while True:
            if waiter.is_set():
                raise OperationCancelled(f"idempotent operation {key!r} cancelled")

            if self._store.acquire_lock(key, self._lock_ttl):
                try:
                    return self._run_locked(key, ttl, operation)
                finally:
                    self._store.release_lock(key)

            record = self._store.get(key)
            if record is not None and record.is_completed:
                self._log.debug("idempotency_cache_hit", operation_key=key)
                return IdempotentResult(result=record.result(), from_cache=True)

            if deadline is not None and self._clock() >= deadline:
                raise OperationInProgressError(key)

            if waiter.wait(self._poll_interval):
                raise OperationCancelled(f"idempotent operation {key!r} cancelled")

    def _run_locked(self, key: str, ttl: float, operation: Callable[[], Any]) -> IdempotentResult:
        # An earlier holder may have completed and released since our last look
        record = self._store.get(key)
        if record is not None and record.is_completed:
            self._log.debug("idempotency_cache_hit", operation_key=key)
            return IdempotentResult(result=record.result(), from_cache=True)

        self._store.mark_processing(key, self._lock_ttl)
        try:
            result = operation()
            result_json = json.dumps(result)
        except BaseException:
            self._store.discard(key)
            raise

        self._store.complete(key, result_json, ttl)
        self._log.debug("idempotency_completed", operation_key=key)
        return IdempotentResult(result=result, from_cache=False)


class IdempotencySweeper(PeriodicSweeper):
    """Deletes idempotency locks that will never expire on their own.

    A healthy lock always carries a TTL of at most ``lock_ttl``. A lock with
    no TTL, or one far longer than any configured lock TTL, is orphaned.
    Completed records are never scanned; they expire by their own TTL.
    """

    name = "idempotency-sweeper"

    def __init__(
        self,
        client: redis.Redis,
        keys: KeySpace | None = None,
        max_lock_age: float = 900.0,
        interval: float = 600.0,
        scan_count: int = 100,
        log: Any | None = None,
    ):
        super().__init__(interval, log=log)
        self._client = client
        self._keys = keys or KeySpace()
        self._max_lock_age = max_lock_age
        self._scan_count = scan_count

    def sweep(self) -> int:
        removed = 0
        pattern = self._keys.idempotency_lock_pattern
        for key in scan_keys(self._client, pattern, self._scan_count, "idempotency_sweep_scan"):
            try:
                ttl = self._client.ttl(key)
                # -2: already gone
                if ttl == -1 or ttl > self._max_lock_age:
                    removed += self._client.delete(key)
            except redis.RedisError as exc:
                self._log.warning("idempotency_sweep_key_failed", key=_text(key), error=str(exc))
        return removed


def idempotency_key(*parts: Any) -> str:
    """Deterministic key from *parts*: sha256 hex of ``"part1:part2:..."``."""
    digest = hashlib.sha256()
    for part in parts:
        digest.update(f"{part}:".encode())
    return digest.hexdigest()


def update_key(entity_id: int, message_id: int | str) -> str:
    """Operation key for an inbound message."""
    return f"msg:{entity_id}:{message_id}"


def callback_key(callback_id: str) -> str:
    """Operation key for an inbound button callback."""
    return f"cb:{callback_id}"


__all__ = [
    "IdempotencyStatus",
    "IdempotencyRecord",
    "IdempotentResult",
    "RedisIdempotencyStore",
    "IdempotencyManager",
    "IdempotencySweeper",
    "idempotency_key",
    "update_key",
    "callback_key",
]
