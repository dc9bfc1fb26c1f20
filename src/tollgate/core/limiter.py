"""
Token bucket rate limiters.

`RateLimiter` is for blocking code, `AsyncRateLimiter` for asyncio
code. Both run the same pure bucket functions against their storage
backend, so for the same sequence of calls and clock readings they
return identical results.

The limiters never lock anything themselves. When the storage offers
`lock(key)`, `consume()` runs its read-refill-debit-write sequence
inside it; without it, concurrent consumers of one key can both be
admitted on the last token.
"""

import time
from contextlib import nullcontext
from dataclasses import replace
from typing import Callable

import structlog

from tollgate.config import Settings
from tollgate.core.backends.base import StorageBackend, SyncStorageBackend
from tollgate.core.backends.memory import AsyncInMemoryStorage, InMemoryStorage
from tollgate.core.bucket import (
    BucketInfo,
    BucketState,
    consume_token,
    create_bucket,
    get_bucket_info,
    now_ms,
)
from tollgate.core.errors import ConfigurationError
from tollgate.core.stats import StatsAggregator, approximate_stats
from tollgate.core.types import (
    KeyGenerator,
    RateLimitContext,
    RateLimitResult,
    RateLimitStats,
    default_key_generator,
)

logger = structlog.get_logger()


class _BaseRateLimiter:
    """Configuration, key derivation and result shaping shared by both limiters."""

    def __init__(
        self,
        requests: int = 100,
        window: float = 60_000,
        burst: int = 10,
        key_generator: KeyGenerator | None = None,
        ttl: float | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if requests <= 0:
            raise ConfigurationError(f"requests must be positive, got {requests}")
        if window <= 0:
            raise ConfigurationError(f"window must be positive, got {window}")
        if burst < 0:
            raise ConfigurationError(f"burst cannot be negative, got {burst}")
        if ttl is not None and ttl <= 0:
            raise ConfigurationError(f"ttl must be positive, got {ttl}")

        self.requests = requests
        self.window = window
        self.burst = burst
        self.key_generator = key_generator or default_key_generator
        self.ttl = ttl
        self._clock = clock or now_ms
        self._stats = StatsAggregator()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}({self.requests}req/{self.window:g}ms, "
            f"burst={self.burst})"
        )

    def _key_for(self, context: RateLimitContext | None) -> str:
        return self.key_generator(context or {})

    def _key_lock(self, key: str):
        # Sync storages hand back a context manager, async ones an async one.
        lock = getattr(self.storage, "lock", None)
        return lock(key) if lock is not None else nullcontext()

    def _new_bucket(self, key: str) -> BucketState:
        bucket = create_bucket(self.requests, self.window, self.burst, now=self._clock())
        self._stats.record_bucket_created(key)
        logger.debug(
            "bucket_created",
            key=key,
            capacity=bucket.capacity,
            burst_capacity=bucket.burst_capacity,
        )
        return bucket

    def _check_result(self, key: str, bucket: BucketState) -> RateLimitResult:
        now = self._clock()
        info = get_bucket_info(bucket, now)
        return RateLimitResult(
            allowed=info.tokens > 0,
            remaining=info.tokens,
            reset_time=info.next_refill,
            retry_after=info.next_refill - now if info.tokens == 0 else 0,
            key=key,
        )

    def _record(self, key: str, result: RateLimitResult, started: float) -> RateLimitResult:
        duration_ms = (time.perf_counter() - started) * 1000
        self._stats.record_request(key, result.allowed, duration_ms)
        if not result.allowed:
            logger.info(
                "rate_limit_denied",
                key=key,
                retry_after=result.retry_after,
                reset_time=result.reset_time,
            )
        return replace(result, key=key)


class RateLimiter(_BaseRateLimiter):
    """
    Blocking token bucket rate limiter.

    Args:
        requests: Tokens earned per window (steady-state capacity).
        window: Window length in milliseconds.
        burst: Extra tokens allowed above `requests` for short spikes.
        key_generator: Maps a context to a bucket key.
        storage: Backend holding the buckets. Defaults to a private
            `InMemoryStorage`.
        ttl: Optional expiry in ms handed to the storage on every write.
        clock: Returns the current time in epoch ms.

    Example:
        >>> limiter = RateLimiter(requests=5, window=10_000, burst=2)
        >>> result = limiter.consume({"client_id": "user1", "resource": "/api"})
        >>> result.allowed, result.remaining
        (True, 6)
    """

    def __init__(
        self,
        requests: int = 100,
        window: float = 60_000,
        burst: int = 10,
        key_generator: KeyGenerator | None = None,
        storage: SyncStorageBackend | None = None,
        ttl: float | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(requests, window, burst, key_generator, ttl, clock)
        self.storage = storage if storage is not None else InMemoryStorage()

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "RateLimiter":
        """Build a limiter from settings, on Redis when `redis_url` is set."""
        if "storage" not in overrides and settings.redis_url:
            from redis import Redis

            from tollgate.core.backends.redis import RedisStorage

            overrides["storage"] = RedisStorage(
                Redis.from_url(settings.redis_url),
                key_prefix=settings.key_prefix,
            )
        return cls(
            requests=settings.requests,
            window=settings.window_ms,
            burst=settings.burst,
            ttl=settings.ttl_ms,
            **overrides,
        )

    def get_bucket(self, key: str) -> BucketState:
        """Load the bucket for `key`, creating and storing a full one if absent."""
        raw = self.storage.get(key)
        if raw is not None:
            return BucketState.from_dict(raw)

        bucket = self._new_bucket(key)
        self.storage.set(key, bucket.to_dict(), self.ttl)
        return bucket

    def check(self, context: RateLimitContext | None = None) -> RateLimitResult:
        """Report whether a request would be admitted, without taking a token."""
        key = self._key_for(context)
        return self._check_result(key, self.get_bucket(key))

    def consume(self, context: RateLimitContext | None = None) -> RateLimitResult:
        """Take one token if available. Only an admitted request is persisted."""
        key = self._key_for(context)
        started = time.perf_counter()

        with self._key_lock(key):
            bucket, result = consume_token(self.get_bucket(key), self._clock())
            if result.allowed:
                self.storage.set(key, bucket.to_dict(), self.ttl)

        return self._record(key, result, started)

    def reset(self, key: str) -> None:
        """Forget the bucket for `key`; the next access starts full."""
        existed = self.storage.delete(key)
        self._stats.forget(key)
        logger.debug("bucket_reset", key=key, existed=existed)

    def cleanup(self) -> None:
        """Drop every bucket if the storage can clear itself, else do nothing."""
        clear = getattr(self.storage, "clear", None)
        if clear is None:
            logger.debug("cleanup_unsupported", storage=type(self.storage).__name__)
            return
        clear()
        self._stats.reset()
        logger.info("buckets_cleared")

    def stats(self, key: str | None = None) -> RateLimitStats:
        """
        Request counters for one key, or for the whole limiter.

        For a key this process has not served, usage is estimated from
        the stored bucket (see `approximate_stats`). A missing bucket is
        reported as all zeros and is not created.
        """
        if key is not None:
            tracked = self._stats.for_key(key)
            if tracked is not None:
                return tracked
            raw = self.storage.get(key)
            if raw is None:
                return RateLimitStats()
            return approximate_stats(BucketState.from_dict(raw), self._clock())

        keys = getattr(self.storage, "keys", None)
        if keys is None:
            return self._stats.snapshot()
        live = keys()
        self._stats.retain(live)
        return self._stats.snapshot(len(live))

    def bucket_info(self, key: str) -> BucketInfo | None:
        """Current view of the bucket for `key`, or None. Never creates one."""
        raw = self.storage.get(key)
        if raw is None:
            return None
        return get_bucket_info(BucketState.from_dict(raw), self._clock())

    def all_buckets(self) -> dict[str, BucketInfo]:
        """
        Views of every stored bucket, keyed by bucket key.

        Needs a storage that can enumerate its keys; for one that
        cannot, the result is empty.
        """
        keys = getattr(self.storage, "keys", None)
        if keys is None:
            logger.debug("enumeration_unsupported", storage=type(self.storage).__name__)
            return {}
        buckets = {}
        for key in keys():
            info = self.bucket_info(key)
            # Expired or reset between listing and reading
            if info is not None:
                buckets[key] = info
        return buckets


class AsyncRateLimiter(_BaseRateLimiter):
    """
    Asyncio token bucket rate limiter.

    Takes the same arguments as `RateLimiter`; `storage` must be an
    asyncio backend and defaults to a private `AsyncInMemoryStorage`.

    Example:
        >>> limiter = AsyncRateLimiter(requests=3, window=5_000, burst=0)
        >>> result = await limiter.consume({"key": "jobs"})
        >>> result.remaining
        2
    """

    def __init__(
        self,
        requests: int = 100,
        window: float = 60_000,
        burst: int = 10,
        key_generator: KeyGenerator | None = None,
        storage: StorageBackend | None = None,
        ttl: float | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        super().__init__(requests, window, burst, key_generator, ttl, clock)
        self.storage = storage if storage is not None else AsyncInMemoryStorage()

    @classmethod
    def from_settings(cls, settings: Settings, **overrides) -> "AsyncRateLimiter":
        """Build a limiter from settings, on Redis when `redis_url` is set."""
        if "storage" not in overrides and settings.redis_url:
            from redis.asyncio import from_url

            from tollgate.core.backends.redis import AsyncRedisStorage

            overrides["storage"] = AsyncRedisStorage(
                from_url(settings.redis_url, encoding="utf-8", decode_responses=True),
                key_prefix=settings.key_prefix,
            )
        return cls(
            requests=settings.requests,
            window=settings.window_ms,
            burst=settings.burst,
            ttl=settings.ttl_ms,
            **overrides,
        )

    async def get_bucket(self, key: str) -> BucketState:
        """Load the bucket for `key`, creating and storing a full one if absent."""
        raw = await self.storage.get(key)
        if raw is not None:
            return BucketState.from_dict(raw)

        bucket = self._new_bucket(key)
        await self.storage.set(key, bucket.to_dict(), self.ttl)
        return bucket

    async def check(self, context: RateLimitContext | None = None) -> RateLimitResult:
        """Report whether a request would be admitted, without taking a token."""
        key = self._key_for(context)
        return self._check_result(key, await self.get_bucket(key))

    async def consume(self, context: RateLimitContext | None = None) -> RateLimitResult:
        """Take one token if available. Only an admitted request is persisted."""
        key = self._key_for(context)
        started = time.perf_counter()

        async with self._key_lock(key):
            bucket, result = consume_token(await self.get_bucket(key), self._clock())
            if result.allowed:
                await self.storage.set(key, bucket.to_dict(), self.ttl)

        return self._record(key, result, started)

    async def reset(self, key: str) -> None:
        """Forget the bucket for `key`; the next access starts full."""
        existed = await self.storage.delete(key)
        self._stats.forget(key)
        logger.debug("bucket_reset", key=key, existed=existed)

    async def cleanup(self) -> None:
        """Drop every bucket if the storage can clear itself, else do nothing."""
        clear = getattr(self.storage, "clear", None)
        if clear is None:
            logger.debug("cleanup_unsupported", storage=type(self.storage).__name__)
            return
        await clear()
        self._stats.reset()
        logger.info("buckets_cleared")

    async def stats(self, key: str | None = None) -> RateLimitStats:
        """Async counterpart of `RateLimiter.stats`."""
        if key is not None:
            tracked = self._stats.for_key(key)
            if tracked is not None:
                return tracked
            raw = await self.storage.get(key)
            if raw is None:
                return RateLimitStats()
            return approximate_stats(BucketState.from_dict(raw), self._clock())

        keys = getattr(self.storage, "keys", None)
        if keys is None:
            return self._stats.snapshot()
        live = await keys()
        self._stats.retain(live)
        return self._stats.snapshot(len(live))

    async def bucket_info(self, key: str) -> BucketInfo | None:
        """Async counterpart of `RateLimiter.bucket_info`."""
        raw = await self.storage.get(key)
        if raw is None:
            return None
        return get_bucket_info(BucketState.from_dict(raw), self._clock())

    async def all_buckets(self) -> dict[str, BucketInfo]:
        """Async counterpart of `RateLimiter.all_buckets`."""
        keys = getattr(self.storage, "keys", None)
        if keys is None:
            logger.debug("enumeration_unsupported", storage=type(self.storage).__name__)
            return {}
        buckets = {}
        for key in await keys():
            info = await self.bucket_info(key)
            if info is not None:
                buckets[key] = info
        return buckets
