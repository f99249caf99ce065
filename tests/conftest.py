"""
Shared pytest fixtures for chat-spine tests.

This module provides:
- ``redis_client``: an in-process fakeredis client (fresh server per test)
- ``clock``: a controllable clock for limiters, breakers and sweepers
- ``keys``: the key space used by every component under test
- ``broken_redis``: a MagicMock client whose every command raises

Usage:
    def test_something(redis_client, keys, clock):
        limiter = RedisRateLimiter(redis_client, keys, clock=clock)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import fakeredis
import pytest
import redis

from chat_spine.core.store import KeySpace

FIXED_EPOCH = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock.

    Call it for float seconds (``time.time``/``time.monotonic`` style) or use
    :meth:`now` for the matching UTC datetime.
    """

    def __init__(self, start: float = FIXED_EPOCH):
        self.current = start

    def __call__(self) -> float:
        return self.current

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.current, UTC)

    def advance(self, seconds: float) -> None:
        self.current += seconds

    def advance_to(self, moment: datetime) -> None:
        self.current = moment.timestamp()

    def ago(self, seconds: float) -> datetime:
        return self.now() - timedelta(seconds=seconds)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def keys() -> KeySpace:
    return KeySpace(prefix="test:")


@pytest.fixture()
def redis_client():
    """Fresh fakeredis server per test, returning ``str`` values."""
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture()
def broken_redis() -> MagicMock:
    """A client whose every command (and pipeline) fails like a dead server."""
    client = MagicMock(name="broken_redis")
    error = redis.ConnectionError("connection refused")
    for command in (
        "get", "set", "delete", "exists", "hgetall", "hset", "pexpire",
        "ttl", "pttl", "zrem", "zadd", "zcard", "zremrangebyscore",
    ):
        getattr(client, command).side_effect = error
    client.scan_iter.side_effect = error
    client.pipeline.return_value.execute.side_effect = error
    return client
