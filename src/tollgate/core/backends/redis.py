"""
Redis storage backends for sharing buckets between processes.

Buckets are stored as JSON strings under a key prefix. Per-key
serialization uses redis-py's distributed `Lock`, so concurrent
consumers in different processes cannot over-admit on the same key.
"""

import json
import math
from typing import Any

from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from tollgate.core.backends.base import StorageBackend, SyncStorageBackend
from tollgate.core.errors import StorageError

DEFAULT_KEY_PREFIX = "tollgate:tb:"


def _decode(raw: bytes | str | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise StorageError(f"Stored bucket is not valid JSON: {raw!r}") from exc


def _lock_name(prefix: str, key: str) -> str:
    # Outside the bucket namespace so keys() and clear() never see locks
    return f"lock:{prefix}{key}"


def _to_str(value: bytes | str) -> str:
    # redis-py returns bytes unless the client was built with decode_responses
    return value.decode() if isinstance(value, bytes) else value


class RedisStorage(SyncStorageBackend):
    """
    Blocking Redis backend.

    Args:
        redis: A `redis.Redis` client.
        key_prefix: Namespace for bucket keys.
        lock_timeout: Seconds before a held per-key lock auto-expires.
    """

    def __init__(
        self,
        redis: Redis,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        lock_timeout: float = 5.0,
    ) -> None:
        self._redis = redis
        self._prefix = key_prefix
        self._lock_timeout = lock_timeout

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str) -> dict[str, Any] | None:
        return _decode(self._redis.get(self._key(key)))

    def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        px = math.ceil(ttl) if ttl is not None else None
        self._redis.set(self._key(key), json.dumps(value), px=px)

    def delete(self, key: str) -> bool:
        return bool(self._redis.delete(self._key(key)))

    def exists(self, key: str) -> bool:
        return bool(self._redis.exists(self._key(key)))

    def keys(self) -> list[str]:
        start = len(self._prefix)
        return [
            _to_str(k)[start:]
            for k in self._redis.scan_iter(match=f"{self._prefix}*")
        ]

    def clear(self) -> None:
        batch = list(self._redis.scan_iter(match=f"{self._prefix}*"))
        if batch:
            self._redis.delete(*batch)

    def lock(self, key: str):
        return self._redis.lock(
            _lock_name(self._prefix, key),
            timeout=self._lock_timeout,
        )


class AsyncRedisStorage(StorageBackend):
    """
    Asyncio Redis backend built on `redis.asyncio`.

    Same layout as `RedisStorage`, so a sync and an async limiter
    pointed at the same server and prefix share buckets.
    """

    def __init__(
        self,
        redis: AsyncRedis,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        lock_timeout: float = 5.0,
    ) -> None:
        self._redis = redis
        self._prefix = key_prefix
        self._lock_timeout = lock_timeout

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> dict[str, Any] | None:
        return _decode(await self._redis.get(self._key(key)))

    async def set(
        self,
        key: str,
        value: dict[str, Any],
        ttl: float | None = None,
    ) -> None:
        px = math.ceil(ttl) if ttl is not None else None
        await self._redis.set(self._key(key), json.dumps(value), px=px)

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(self._key(key)))

    async def exists(self, key: str) -> bool:
        return bool(await self._redis.exists(self._key(key)))

    async def keys(self) -> list[str]:
        start = len(self._prefix)
        return [
            _to_str(k)[start:]
            async for k in self._redis.scan_iter(match=f"{self._prefix}*")
        ]

    async def clear(self) -> None:
        batch = [k async for k in self._redis.scan_iter(match=f"{self._prefix}*")]
        if batch:
            await self._redis.delete(*batch)

    def lock(self, key: str):
        return self._redis.lock(
            _lock_name(self._prefix, key),
            timeout=self._lock_timeout,
        )
