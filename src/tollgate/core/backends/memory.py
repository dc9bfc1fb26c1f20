"""
In-memory storage backends, the default for every limiter.

Both backends keep buckets in a Python dictionary, making them:
- Fast: No network calls, no serialization
- Simple: No external dependencies
- Isolated: Each instance is independent; limiters never share one
  unless you pass the same instance to both

Not suitable for sharing state between processes. Use the Redis
backends for that.
"""

from __future__ import annotations

import asyncio
import threading
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterator

from tollgate.core.backends.base import StorageBackend, SyncStorageBackend


@dataclass
class _KeyLock:
    """A per-key lock and the number of callers holding or waiting on it."""

    lock: threading.Lock | asyncio.Lock
    users: int = 0


class _MemoryStore:
    """
    Dictionary storage with TTL checked on access.

    The whole map is guarded by one re-entrant lock, so each individual
    operation is atomic across threads.
    """

    def __init__(self) -> None:
        # key -> value dict
        self._data: dict[str, dict[str, Any]] = {}

        # key -> unix timestamp (seconds) when the key expires
        self._expiry: dict[str, float] = {}

        self._mutex = threading.RLock()

    def _is_expired(self, key: str) -> bool:
        if key in self._expiry:
            return time.time() > self._expiry[key]
        return False

    def _cleanup_if_expired(self, key: str) -> bool:
        if self._is_expired(key):
            self._data.pop(key, None)
            self._expiry.pop(key, None)
            return True
        return False

    def get(self, key: str) -> dict[str, Any] | None:
        with self._mutex:
            if self._cleanup_if_expired(key):
                return None
            value = self._data.get(key)
            # Hand out a copy so callers can't mutate stored state.
            return dict(value) if value is not None else None

    def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        with self._mutex:
            self._data[key] = dict(value)
            if ttl is None:
                self._expiry.pop(key, None)
            else:
                self._expiry[key] = time.time() + ttl / 1000

    def delete(self, key: str) -> bool:
        with self._mutex:
            expired = self._cleanup_if_expired(key)
            existed = self._data.pop(key, None) is not None
            self._expiry.pop(key, None)
            return existed and not expired

    def exists(self, key: str) -> bool:
        with self._mutex:
            return not self._cleanup_if_expired(key) and key in self._data

    def clear(self) -> None:
        with self._mutex:
            self._data.clear()
            self._expiry.clear()

    def keys(self) -> list[str]:
        with self._mutex:
            return [k for k in self._data if not self._is_expired(k)]


class InMemoryStorage(SyncStorageBackend):
    """
    Thread-safe blocking in-memory storage.

    Besides the map-wide lock, `lock(key)` hands out one lock per key so
    the limiter's read-refill-debit-write sequence on a key cannot
    interleave with another thread's. A key's lock is dropped as soon as
    no thread holds or waits on it.

    Example:
        >>> storage = InMemoryStorage()
        >>> storage.set("key", {"value": 42}, ttl=60_000)
        >>> storage.get("key")
        {'value': 42}
    """

    def __init__(self) -> None:
        self._store = _MemoryStore()
        self._key_locks: dict[str, _KeyLock] = {}
        self._key_locks_guard = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        return self._store.get(key)

    def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        self._store.set(key, value, ttl)

    def delete(self, key: str) -> bool:
        return self._store.delete(key)

    def exists(self, key: str) -> bool:
        return self._store.exists(key)

    def clear(self) -> None:
        self._store.clear()

    def keys(self) -> list[str]:
        return self._store.keys()

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        with self._key_locks_guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock(threading.Lock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._key_locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._key_locks[key]


class AsyncInMemoryStorage(StorageBackend):
    """
    Asyncio in-memory storage.

    Per-key `asyncio.Lock`s serialize read-modify-write sequences
    between tasks; the underlying map is also safe to share with
    threads.
    """

    def __init__(self) -> None:
        self._store = _MemoryStore()
        self._key_locks: dict[str, _KeyLock] = {}

    async def get(self, key: str) -> dict[str, Any] | None:
        return self._store.get(key)

    async def set(
        self,
        key: str,
        value: dict[str, Any],
        ttl: float | None = None,
    ) -> None:
        self._store.set(key, value, ttl)

    async def delete(self, key: str) -> bool:
        return self._store.delete(key)

    async def exists(self, key: str) -> bool:
        return self._store.exists(key)

    async def clear(self) -> None:
        self._store.clear()

    async def keys(self) -> list[str]:
        return self._store.keys()

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        # Bookkeeping runs without awaiting, so it needs no guard.
        entry = self._key_locks.get(key)
        if entry is None:
            entry = self._key_locks[key] = _KeyLock(asyncio.Lock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._key_locks[key]
