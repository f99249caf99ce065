"""Tests for RedisRateLimiter: exact shared sliding window."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import pytest

from chat_spine.core.errors import StoreUnavailableError
from chat_spine.ratelimit.limiters import RedisRateLimiter


@pytest.fixture()
def limiter(redis_client, keys, clock):
    return RedisRateLimiter(redis_client, keys, clock=clock)


class TestSlidingWindow:
    def test_limit_two_per_second(self, limiter, clock):
        first = limiter.check("user:1", limit=2, window=1.0)
        clock.advance(0.1)
        second = limiter.check("user:1", limit=2, window=1.0)
        clock.advance(0.1)
        third = limiter.check("user:1", limit=2, window=1.0)

        assert (first.allowed, first.remaining) == (True, 1)
        assert (second.allowed, second.remaining) == (True, 0)
        assert (third.allowed, third.remaining) == (False, 0)
        assert third.retry_after == 1.0

        clock.advance(1.0)  # both admitted requests are now outside the window
        fourth = limiter.check("user:1", limit=2, window=1.0)
        assert (fourth.allowed, fourth.remaining) == (True, 1)

    def test_window_slides(self, limiter, clock):
        limiter.check("k", limit=2, window=1.0)
        clock.advance(0.6)
        limiter.check("k", limit=2, window=1.0)
        clock.advance(0.6)  # first request expired, second still counts
        result = limiter.check("k", limit=2, window=1.0)
        assert result.allowed
        assert result.remaining == 0

    def test_keys_are_independent(self, limiter):
        assert limiter.check("user:1", limit=1, window=60).allowed
        assert limiter.check("user:2", limit=1, window=60).allowed
        assert not limiter.check("user:1", limit=1, window=60).allowed

    def test_reset_at_and_metadata(self, limiter, clock):
        result = limiter.check("k", limit=5, window=60)
        assert result.reset_at == datetime.fromtimestamp(clock() + 60, UTC)
        assert result.limit == 5
        assert result.backend == "redis"
        assert result.degraded is False

    def test_key_expiry_is_twice_window(self, limiter, redis_client, keys):
        limiter.check("k", limit=5, window=10)
        assert 10_000 < redis_client.pttl(keys.rate_limit("k")) <= 20_000

    @pytest.mark.parametrize("limit", [0, -1])
    def test_non_positive_limit_rejected_without_store(self, limiter, redis_client, keys, limit):
        result = limiter.check("k", limit=limit, window=1)
        assert result.allowed is False
        assert not redis_client.exists(keys.rate_limit("k"))


class TestRejectedRequests:
    def test_rejection_does_not_consume_by_default(self, limiter, redis_client, keys):
        for _ in range(5):
            limiter.check("k", limit=2, window=60)
        assert redis_client.zcard(keys.rate_limit("k")) == 2

    def test_penalize_rejected_keeps_tokens(self, redis_client, keys, clock):
        limiter = RedisRateLimiter(redis_client, keys, clock=clock, penalize_rejected=True)
        for _ in range(5):
            limiter.check("k", limit=2, window=60)
        assert redis_client.zcard(keys.rate_limit("k")) == 5


class TestBackendFailure:
    def test_raises_store_unavailable(self, broken_redis, keys):
        limiter = RedisRateLimiter(broken_redis, keys)
        with pytest.raises(StoreUnavailableError) as excinfo:
            limiter.check("user:1", limit=2, window=1)
        assert excinfo.value.context["key"] == "user:1"


def test_concurrent_checks_admit_exactly_limit(limiter):
    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: limiter.check("k", limit=5, window=60), range(20)))
    assert sum(r.allowed for r in results) == 5
