"""
Request counters for the rate limiters.

Counters are process-local. When buckets live in shared storage,
another process's traffic is only visible through the bucket itself,
which is what `approximate_stats` reads.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import Iterable

from tollgate.core.bucket import BucketState, get_bucket_info
from tollgate.core.types import RateLimitStats

DEFAULT_MAX_TRACKED_KEYS = 10_000


@dataclass
class _Counters:
    total: int = 0
    allowed: int = 0
    rejected: int = 0
    buckets_created: int = 0
    duration_ms: float = 0.0

    def to_stats(self, total_keys: int) -> RateLimitStats:
        return RateLimitStats(
            total_requests=self.total,
            allowed_requests=self.allowed,
            rejected_requests=self.rejected,
            total_keys=total_keys,
            buckets_created=self.buckets_created,
            avg_response_time=self.duration_ms / self.total if self.total else 0.0,
        )


class StatsAggregator:
    """
    Thread-safe global and per-key counters fed by `consume()` calls.

    At most `max_keys` keys keep per-key counters; the least recently
    used key is dropped first. Global counters are never dropped.
    """

    def __init__(self, max_keys: int = DEFAULT_MAX_TRACKED_KEYS) -> None:
        self._lock = threading.Lock()
        self._global = _Counters()
        self._per_key: OrderedDict[str, _Counters] = OrderedDict()
        self._max_keys = max_keys

    def _counters_for(self, key: str) -> _Counters:
        counters = self._per_key.get(key)
        if counters is None:
            counters = self._per_key[key] = _Counters()
            while len(self._per_key) > self._max_keys:
                self._per_key.popitem(last=False)
        else:
            self._per_key.move_to_end(key)
        return counters

    def record_request(self, key: str, allowed: bool, duration_ms: float) -> None:
        with self._lock:
            for counters in (self._global, self._counters_for(key)):
                counters.total += 1
                counters.duration_ms += duration_ms
                if allowed:
                    counters.allowed += 1
                else:
                    counters.rejected += 1

    def record_bucket_created(self, key: str) -> None:
        with self._lock:
            self._global.buckets_created += 1
            self._counters_for(key).buckets_created += 1

    def snapshot(self, total_keys: int | None = None) -> RateLimitStats:
        """
        Global counters.

        Args:
            total_keys: Number of buckets in storage, when the storage
                can enumerate them. Defaults to the keys seen by this
                process.
        """
        with self._lock:
            if total_keys is None:
                total_keys = len(self._per_key)
            return self._global.to_stats(total_keys)

    def for_key(self, key: str) -> RateLimitStats | None:
        """Counters for one key, or None if this process never saw it."""
        with self._lock:
            counters = self._per_key.get(key)
            return counters.to_stats(total_keys=1) if counters else None

    def forget(self, key: str) -> None:
        with self._lock:
            self._per_key.pop(key, None)

    def retain(self, live_keys: Iterable[str]) -> None:
        """Drop per-key counters for every key not in `live_keys`."""
        live = set(live_keys)
        with self._lock:
            for key in [k for k in self._per_key if k not in live]:
                del self._per_key[key]

    def reset(self) -> None:
        with self._lock:
            self._global = _Counters()
            self._per_key.clear()


def approximate_stats(bucket: BucketState, now: float | None = None) -> RateLimitStats:
    """
    Estimate usage of a key from its bucket alone.

    Requests are taken to be `burst_capacity - tokens`. This undercounts
    as soon as tokens have partially refilled since the last consume,
    and it cannot see rejected requests at all.
    """
    info = get_bucket_info(bucket, now)
    used = max(0, bucket.burst_capacity - info.tokens)
    return RateLimitStats(
        total_requests=used,
        allowed_requests=used,
        rejected_requests=0,
        total_keys=1,
        buckets_created=1,
    )
