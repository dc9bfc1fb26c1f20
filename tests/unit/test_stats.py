"""
Unit tests for request statistics.

Run tests:
    pytest tests/unit/test_stats.py -v
"""

import time
from dataclasses import replace

import pytest

from tollgate.core.backends.memory import InMemoryStorage
from tollgate.core.bucket import create_bucket
from tollgate.core.limiter import AsyncRateLimiter, RateLimiter
from tollgate.core.stats import StatsAggregator, approximate_stats
from tollgate.core.types import RateLimitStats


@pytest.fixture
def limiter(clock) -> RateLimiter:
    return RateLimiter(requests=2, window=60_000, burst=1, clock=clock)


# =============================================================================
# Aggregator
# =============================================================================


class TestStatsAggregator:

    def test_counts_allowed_and_rejected(self) -> None:
        stats = StatsAggregator()
        stats.record_bucket_created("a")
        stats.record_request("a", allowed=True, duration_ms=2.0)
        stats.record_request("a", allowed=False, duration_ms=4.0)
        stats.record_request("b", allowed=True, duration_ms=0.0)

        snapshot = stats.snapshot()

        assert snapshot == RateLimitStats(
            total_requests=3,
            allowed_requests=2,
            rejected_requests=1,
            total_keys=2,
            buckets_created=1,
            avg_response_time=2.0,
        )

    def test_per_key_counters(self) -> None:
        stats = StatsAggregator()
        stats.record_request("a", allowed=False, duration_ms=1.0)

        per_key = stats.for_key("a")

        assert per_key.rejected_requests == 1
        assert per_key.total_keys == 1
        assert stats.for_key("unknown") is None

    def test_total_keys_override(self) -> None:
        assert StatsAggregator().snapshot(total_keys=9).total_keys == 9

    def test_forget_and_reset(self) -> None:
        stats = StatsAggregator()
        stats.record_request("a", allowed=True, duration_ms=1.0)

        stats.forget("a")
        assert stats.for_key("a") is None
        assert stats.snapshot().total_requests == 1

        stats.reset()
        assert stats.snapshot() == RateLimitStats()

    def test_tracked_keys_are_bounded(self) -> None:
        stats = StatsAggregator(max_keys=2)
        for key in ("a", "b", "c"):
            stats.record_request(key, allowed=True, duration_ms=1.0)

        assert stats.for_key("a") is None
        assert stats.for_key("c").total_requests == 1
        assert stats.snapshot().total_requests == 3

    def test_least_recently_used_key_is_dropped_first(self) -> None:
        stats = StatsAggregator(max_keys=2)
        stats.record_request("a", allowed=True, duration_ms=1.0)
        stats.record_request("b", allowed=True, duration_ms=1.0)
        stats.record_request("a", allowed=True, duration_ms=1.0)

        stats.record_bucket_created("c")

        assert stats.for_key("a").total_requests == 2
        assert stats.for_key("b") is None

    def test_retain_drops_keys_no_longer_stored(self) -> None:
        stats = StatsAggregator()
        stats.record_request("a", allowed=True, duration_ms=1.0)
        stats.record_request("b", allowed=True, duration_ms=1.0)

        stats.retain(["b"])

        assert stats.for_key("a") is None
        assert stats.for_key("b") is not None


class TestApproximateStats:

    def test_used_tokens_count_as_requests(self) -> None:
        bucket = replace(create_bucket(5, 10_000, burst=2, now=0), tokens=3.0)

        stats = approximate_stats(bucket, now=0)

        assert stats.total_requests == 4
        assert stats.allowed_requests == 4
        assert stats.rejected_requests == 0

    def test_undercounts_after_partial_refill(self) -> None:
        bucket = replace(create_bucket(4, 4096, now=0), tokens=0.0)

        assert approximate_stats(bucket, now=0).total_requests == 4
        assert approximate_stats(bucket, now=2048).total_requests == 2


# =============================================================================
# Limiter Integration
# =============================================================================


class TestLimiterStats:

    def test_global_stats(self, limiter: RateLimiter) -> None:
        for _ in range(4):
            limiter.consume({"client_id": "a"})
        limiter.consume({"client_id": "b"})

        stats = limiter.stats()

        assert stats.total_requests == 5
        assert stats.allowed_requests == 4
        assert stats.rejected_requests == 1
        assert stats.total_keys == 2
        assert stats.buckets_created == 2
        assert stats.avg_response_time >= 0

    def test_check_is_not_counted(self, limiter: RateLimiter) -> None:
        limiter.check({"client_id": "a"})

        stats = limiter.stats()

        assert stats.total_requests == 0
        assert stats.buckets_created == 1

    def test_key_stats(self, limiter: RateLimiter) -> None:
        for _ in range(4):
            limiter.consume({"client_id": "a"})
        limiter.consume({"client_id": "b"})

        stats = limiter.stats("a:global")

        assert stats.total_requests == 4
        assert stats.rejected_requests == 1
        assert stats.total_keys == 1

    def test_unknown_key_is_zero_and_not_created(self, limiter: RateLimiter) -> None:
        assert limiter.stats("ghost") == RateLimitStats()
        assert not limiter.storage.exists("ghost")

    def test_key_served_elsewhere_is_approximated(self, clock) -> None:
        shared = InMemoryStorage()
        worker = RateLimiter(requests=2, window=60_000, burst=1, storage=shared, clock=clock)
        observer = RateLimiter(requests=2, window=60_000, burst=1, storage=shared, clock=clock)

        worker.consume({"client_id": "a"})
        worker.consume({"client_id": "a"})

        assert observer.stats("a:global").total_requests == 2

    def test_total_keys_without_enumeration(self, clock) -> None:
        class DictStorage:
            def __init__(self) -> None:
                self.data = {}

            def get(self, key):
                return self.data.get(key)

            def set(self, key, value, ttl=None):
                self.data[key] = value

            def delete(self, key):
                return self.data.pop(key, None) is not None

        limiter = RateLimiter(storage=DictStorage(), clock=clock)
        limiter.consume({"client_id": "a"})
        limiter.consume({"client_id": "b"})

        assert limiter.stats().total_keys == 2

    def test_reset_forgets_key_counters(self, limiter: RateLimiter) -> None:
        limiter.consume({"client_id": "a"})

        limiter.reset("a:global")

        assert limiter.stats("a:global") == RateLimitStats()
        assert limiter.stats().total_requests == 1

    def test_expired_buckets_drop_key_counters(self) -> None:
        limiter = RateLimiter(requests=2, window=60_000, ttl=1)
        for i in range(50):
            limiter.consume({"client_id": f"user{i}"})

        time.sleep(0.01)
        stats = limiter.stats()

        assert stats.total_keys == 0
        assert stats.total_requests == 50
        assert limiter.stats("user0:global") == RateLimitStats()

    def test_cleanup_resets_counters(self, limiter: RateLimiter) -> None:
        limiter.consume({"client_id": "a"})

        limiter.cleanup()

        assert limiter.stats() == RateLimitStats()

    @pytest.mark.asyncio
    async def test_async_limiter_stats(self, clock) -> None:
        limiter = AsyncRateLimiter(requests=1, window=60_000, burst=0, clock=clock)
        await limiter.consume({"client_id": "a"})
        await limiter.consume({"client_id": "a"})

        stats = await limiter.stats()
        key_stats = await limiter.stats("a:global")

        assert (stats.allowed_requests, stats.rejected_requests) == (1, 1)
        assert stats.total_keys == 1
        assert key_stats.total_requests == 2
        assert await limiter.stats("ghost") == RateLimitStats()
