"""Tests for MemoryRateLimiter: per-process sliding window."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from chat_spine.ratelimit.limiters import MemoryRateLimiter


@pytest.fixture()
def limiter(clock):
    return MemoryRateLimiter(clock=clock)


class TestCheck:
    def test_limit_two_per_second(self, limiter, clock):
        assert limiter.check("k", 2, 1.0).allowed
        clock.advance(0.1)
        assert limiter.check("k", 2, 1.0).allowed
        clock.advance(0.1)
        rejected = limiter.check("k", 2, 1.0)
        assert rejected.allowed is False
        assert rejected.remaining == 0
        assert rejected.backend == "memory"

        clock.advance(1.0)
        assert limiter.check("k", 2, 1.0).allowed

    def test_rejected_requests_not_recorded(self, limiter, clock):
        limiter.check("k", 1, 1.0)
        for _ in range(10):
            limiter.check("k", 1, 1.0)
        clock.advance(1.01)
        assert limiter.check("k", 1, 1.0).allowed

    def test_remaining_counts_down(self, limiter):
        assert [limiter.check("k", 3, 60).remaining for _ in range(4)] == [2, 1, 0, 0]

    def test_zero_limit(self, limiter):
        assert limiter.check("k", 0, 60).allowed is False
        assert limiter.bucket_count() == 0


class TestCleanup:
    def test_drops_idle_buckets(self, limiter, clock):
        limiter.check("old", 5, 60)
        clock.advance(400)
        limiter.check("fresh", 5, 60)

        assert limiter.cleanup(max_age=300) == 1
        assert limiter.bucket_count() == 1

    def test_keeps_bucket_until_its_window_passes(self, limiter, clock):
        limiter.check("daily", 1, 3600)
        clock.advance(400)
        assert limiter.cleanup(max_age=300) == 0
        assert limiter.check("daily", 1, 3600).allowed is False

        clock.advance(3600)
        assert limiter.cleanup(max_age=300) == 1

    def test_non_positive_max_age_is_noop(self, limiter):
        limiter.check("k", 5, 60)
        assert limiter.cleanup(0) == 0
        assert limiter.bucket_count() == 1


def test_concurrent_checks_admit_exactly_limit(limiter):
    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(lambda _: limiter.check("k", 25, 60), range(100)))
    assert sum(r.allowed for r in results) == 25
