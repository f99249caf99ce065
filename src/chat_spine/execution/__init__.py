"""chat-spine execution -- locking, idempotency, sweepers and resilience.

ARCHITECTURE
────────────
::

    Coordination
      ├── EntityLock          ─ per-entity SET NX PX lock
      ├── IdempotencyManager  ─ at-most-once execution per operation key
      └── PeriodicSweeper     ─ daemon-thread cleanup loop base

    Resilience
      ├── RetryContext        ─ bounded exponential backoff
      └── CircuitBreaker      ─ error-rate fail-fast

MODULE MAP
──────────
  lock.py             ─ EntityLock
  idempotency.py      ─ store, manager, lock sweeper, key helpers
  sweeper.py          ─ PeriodicSweeper
  retry.py            ─ ExponentialBackoff, NoRetry, RetryContext, with_retry
  circuit_breaker.py  ─ CircuitBreaker, CircuitStats, CircuitState
"""

from .circuit_breaker import CircuitBreaker, CircuitState, CircuitStats
from .idempotency import (
    IdempotencyManager,
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotencySweeper,
    IdempotentResult,
    RedisIdempotencyStore,
    callback_key,
    idempotency_key,
    update_key,
)
from .lock import EntityLock
from .retry import ExponentialBackoff, NoRetry, RetryContext, RetryStrategy, with_retry
from .sweeper import PeriodicSweeper

__all__ = [
    # circuit_breaker
    "CircuitBreaker",
    "CircuitState",
    "CircuitStats",
    # idempotency
    "IdempotencyManager",
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotencySweeper",
    "IdempotentResult",
    "RedisIdempotencyStore",
    "callback_key",
    "idempotency_key",
    "update_key",
    # lock
    "EntityLock",
    # retry
    "ExponentialBackoff",
    "NoRetry",
    "RetryContext",
    "RetryStrategy",
    "with_retry",
    # sweeper
    "PeriodicSweeper",
]
