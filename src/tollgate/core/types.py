"""
Value types shared by the sync and async limiters.

The result and stats objects are immutable. A rate limit context is
any mapping of caller attributes; the limiter turns it into a storage
key through a key generator.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

RateLimitContext = Mapping[str, Any]
KeyGenerator = Callable[[RateLimitContext], str]


def default_key_generator(context: RateLimitContext | None) -> str:
    """
    Derive a bucket key from a context.

    Uses "{client_id}:{resource}" with "default" and "global" as
    fallbacks. A context holding only a flat "key" field maps to that
    key as-is.

    Example:
        >>> default_key_generator({"client_id": "user1", "resource": "/api"})
        'user1:/api'
        >>> default_key_generator({"key": "jobs"})
        'jobs'
        >>> default_key_generator({})
        'default:global'
    """
    context = context or {}
    client_id = context.get("client_id")
    resource = context.get("resource")
    flat_key = context.get("key")

    if flat_key and not client_id and not resource:
        return str(flat_key)

    return f"{client_id or 'default'}:{resource or 'global'}"


@dataclass(frozen=True)
class RateLimitResult:
    """
    Immutable outcome of a `check` or `consume` call.

    Attributes:
        allowed: Whether the unit of work may proceed.
        remaining: Whole tokens left after the call.
        reset_time: Epoch milliseconds of the next refill milestone
            (last refill + window).
        retry_after: Milliseconds to wait before a token is available.
            None when a consume was allowed.
        key: The bucket key the context resolved to.
    """

    allowed: bool
    remaining: int
    reset_time: float
    retry_after: float | None = None
    key: str = ""

    @property
    def is_allowed(self) -> bool:
        """Convenience alias for `allowed`."""
        return self.allowed


@dataclass(frozen=True)
class RateLimitStats:
    """Aggregate counters for the whole limiter or a single key."""

    total_requests: int = 0
    allowed_requests: int = 0
    rejected_requests: int = 0
    total_keys: int = 0
    buckets_created: int = 0
    avg_response_time: float = 0.0
