"""Wires every coordination primitive from :class:`ChatSpineSettings`.

Usage::

    with ChatSpineRuntime.from_settings() as runtime:
        runtime.dispatcher.register("buy", start_buying)
        runtime.dispatcher.dispatch(InboundEvent(42, "buy"))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import redis

from chat_spine.core.logging import configure_logging, get_logger
from chat_spine.core.settings import ChatSpineSettings, load_settings
from chat_spine.core.store import KeySpace, create_redis_client
from chat_spine.dispatch import Dispatcher
from chat_spine.execution.circuit_breaker import CircuitBreaker
from chat_spine.execution.idempotency import (
    IdempotencyManager,
    IdempotencySweeper,
    RedisIdempotencyStore,
)
from chat_spine.execution.lock import EntityLock
from chat_spine.execution.retry import ExponentialBackoff
from chat_spine.execution.sweeper import PeriodicSweeper
from chat_spine.ratelimit.limiters import AdaptiveRateLimiter, MemoryRateLimiter, RedisRateLimiter
from chat_spine.ratelimit.policy import RateLimitPolicy, RateLimitRules
from chat_spine.ratelimit.sweeper import RateLimitSweeper
from chat_spine.state.machine import StateMachine
from chat_spine.state.observers import TransitionObserver
from chat_spine.state.storage import RedisStateStorage
from chat_spine.state.sweeper import StateSweeper

logger = get_logger(__name__)


@dataclass
class ChatSpineRuntime:
    """Every primitive a bot process needs, sharing one client and key space."""

    settings: ChatSpineSettings
    client: redis.Redis
    keys: KeySpace
    lock: EntityLock
    storage: RedisStateStorage
    fsm: StateMachine
    memory_limiter: MemoryRateLimiter
    limiter: AdaptiveRateLimiter
    policy: RateLimitPolicy
    idempotency_store: RedisIdempotencyStore
    idempotency: IdempotencyManager
    dispatcher: Dispatcher
    sweepers: list[PeriodicSweeper] = field(default_factory=list)

    @classmethod
    def from_settings(
        cls,
        settings: ChatSpineSettings | None = None,
        client: redis.Redis | None = None,
        observer: TransitionObserver | None = None,
    ) -> ChatSpineRuntime:
        """Build the runtime; without *settings* they are loaded from the environment.

        Raises:
            ConfigError: If the environment holds an invalid value
        """
        settings = settings if settings is not None else load_settings()
        client = client if client is not None else create_redis_client(settings.redis_url)
        keys = KeySpace(prefix=settings.key_prefix)

        lock = EntityLock(client, keys, ttl=settings.state_lock_ttl)
        storage = RedisStateStorage(client, keys, ttl=settings.state_ttl)
        fsm = StateMachine(storage, lock, observer=observer)

        memory_limiter = MemoryRateLimiter()
        limiter = AdaptiveRateLimiter(
            RedisRateLimiter(client, keys, penalize_rejected=settings.rate_limit_penalize_rejected),
            memory_limiter,
            fallback_ratio=settings.rate_limit_fallback_ratio,
        )
        policy = RateLimitPolicy(limiter, RateLimitRules.from_settings(settings))

        idempotency_store = RedisIdempotencyStore(client, keys)
        idempotency = IdempotencyManager(
            idempotency_store,
            lock_ttl=settings.idempotency_lock_ttl,
            poll_interval=settings.idempotency_poll_interval,
            max_wait=settings.idempotency_max_wait,
        )

        dispatcher = Dispatcher(fsm, policy, idempotency, idempotency_ttl=settings.idempotency_ttl)

        sweepers: list[PeriodicSweeper] = [
            StateSweeper(storage, ttl=settings.state_ttl, interval=settings.state_sweep_interval),
            RateLimitSweeper(
                client,
                keys,
                retention=settings.rate_limit_retention,
                interval=settings.rate_limit_sweep_interval,
                memory_limiter=memory_limiter,
            ),
            IdempotencySweeper(
                client,
                keys,
                max_lock_age=settings.idempotency_max_lock_age,
                interval=settings.idempotency_sweep_interval,
            ),
        ]

        return cls(
            settings=settings,
            client=client,
            keys=keys,
            lock=lock,
            storage=storage,
            fsm=fsm,
            memory_limiter=memory_limiter,
            limiter=limiter,
            policy=policy,
            idempotency_store=idempotency_store,
            idempotency=idempotency,
            dispatcher=dispatcher,
            sweepers=sweepers,
        )

    def configure_logging(self) -> None:
        """Apply the logging level and format from settings to the whole process."""
        configure_logging(level=self.settings.log_level, json_format=self.settings.log_json)

    def retry_strategy(self) -> ExponentialBackoff:
        """Backoff configured from settings, for calls to downstream services."""
        return ExponentialBackoff(
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            multiplier=self.settings.retry_multiplier,
        )

    def circuit_breaker(self, name: str) -> CircuitBreaker:
        """A new breaker configured from settings. The caller owns it."""
        return CircuitBreaker(
            name=name,
            failure_rate_threshold=self.settings.breaker_failure_rate,
            minimum_requests=self.settings.breaker_minimum_requests,
            recovery_timeout=self.settings.breaker_recovery_timeout,
            half_open_max_calls=self.settings.breaker_half_open_max_calls,
        )

    def start(self) -> None:
        for sweeper in self.sweepers:
            sweeper.start()
        logger.info("runtime_started", sweepers=[s.name for s in self.sweepers])

    def stop(self, timeout: float | None = 5.0) -> None:
        for sweeper in self.sweepers:
            sweeper.stop(timeout)
        logger.info("runtime_stopped")

    def __enter__(self) -> ChatSpineRuntime:
        self.start()
        return self

    def __exit__(self, *args: Any) -> None:
        self.stop()


__all__ = ["ChatSpineRuntime"]
