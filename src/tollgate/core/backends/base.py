"""
Abstract base classes for storage backends.

This module defines the contract the rate limiters use to keep bucket
state. Separating storage from the bucket arithmetic allows:
- Testing with in-memory storage (no Redis needed)
- Sharing buckets between processes through Redis or any other store
- Running the same limiter in blocking code and in asyncio code

Two variants exist with the same shape: `SyncStorageBackend` for
blocking callers and `StorageBackend` for asyncio callers.

Besides the required get/set/delete, a backend may offer optional
capabilities which the limiters discover with getattr, so a backend
does not have to subclass these ABCs at all:
- exists(key) -> bool
- clear() -> None: drop every bucket (used by `cleanup()`)
- keys() -> list[str]: enumerate buckets (used by global stats)
- lock(key): context manager (async context manager for the async
  variant) that serializes read-modify-write sequences on one key
"""

from abc import ABC, abstractmethod
from typing import Any


class SyncStorageBackend(ABC):
    """
    Blocking key-value storage for bucket records.

    Values are plain dictionaries of scalars (see `BucketState.to_dict`),
    so any backend able to store JSON can hold them.

    Errors raised by an implementation propagate to the caller of the
    limiter unchanged; nothing here retries or suppresses them.

    Example:
        >>> storage = InMemoryStorage()  # for testing
        >>> limiter = RateLimiter(storage=storage)

        >>> storage = RedisStorage(Redis.from_url(url))  # shared between processes
        >>> limiter = RateLimiter(storage=storage)
    """

    @abstractmethod
    def get(self, key: str) -> dict[str, Any] | None:
        """
        Retrieve a value by key.

        Args:
            key: The key to retrieve.

        Returns:
            The stored dictionary, or None if the key doesn't exist or expired.

        Example:
            >>> storage.get("user:1:/api")
            {"tokens": 5.0, "capacity": 5, "burst_capacity": 7, ...}
        """

    @abstractmethod
    def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        """
        Store a value, optionally with an expiration time.

        Args:
            key: The key to store under.
            value: Dictionary to store (must be JSON-serializable).
            ttl: Time-to-live in milliseconds, or None to keep forever.
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """
        Delete a key.

        Args:
            key: The key to delete. No error if the key doesn't exist.

        Returns:
            True if the key existed.
        """

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class StorageBackend(ABC):
    """
    Asyncio key-value storage for bucket records.

    Same contract as `SyncStorageBackend`; every method is a coroutine.
    """

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Retrieve a value by key, or None if missing or expired."""

    @abstractmethod
    async def set(
        self,
        key: str,
        value: dict[str, Any],
        ttl: float | None = None,
    ) -> None:
        """Store a value with an optional TTL in milliseconds."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete a key. Returns True if it existed."""

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None
