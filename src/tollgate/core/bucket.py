"""
Token bucket model.

A bucket is an immutable value; every operation returns a new bucket
instead of mutating the old one. This keeps the sync and async
limiters on exactly the same arithmetic and lets any storage backend
persist a bucket as six plain fields.

All timestamps and durations are milliseconds. Each function accepts
an optional `now` so callers can drive time from their own clock.
"""

import math
import time
from dataclasses import asdict, dataclass, replace
from typing import Any

from tollgate.core.errors import StorageError
from tollgate.core.types import RateLimitResult


def now_ms() -> float:
    """Current wall-clock time in epoch milliseconds."""
    return time.time() * 1000


@dataclass(frozen=True)
class BucketState:
    """
    Persisted state of one token bucket.

    Attributes:
        tokens: Tokens currently available (fractional).
        capacity: Steady-state capacity, i.e. requests per window.
        burst_capacity: Capacity plus burst allowance; the token ceiling.
        last_refill: Epoch ms of the last refill computation.
        window: Window length in ms.
        refill_rate: Tokens added per ms (capacity / window).
    """

    tokens: float
    capacity: int
    burst_capacity: int
    last_refill: float
    window: float
    refill_rate: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BucketState":
        try:
            return cls(
                tokens=float(data["tokens"]),
                capacity=int(data["capacity"]),
                burst_capacity=int(data["burst_capacity"]),
                last_refill=float(data["last_refill"]),
                window=float(data["window"]),
                refill_rate=float(data["refill_rate"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StorageError(f"Malformed bucket record: {data!r}") from exc


@dataclass(frozen=True)
class BucketInfo:
    """Read-only snapshot of a bucket after a (non-persisted) refill."""

    tokens: int
    capacity: int
    last_refill: float
    next_refill: float


def create_bucket(
    capacity: int,
    window: float,
    burst: int = 0,
    now: float | None = None,
) -> BucketState:
    """Create a full bucket: capacity plus burst tokens."""
    now = now_ms() if now is None else now
    burst_capacity = capacity + burst
    return BucketState(
        tokens=float(burst_capacity),
        capacity=capacity,
        burst_capacity=burst_capacity,
        last_refill=now,
        window=window,
        refill_rate=capacity / window,
    )


def refill_bucket(bucket: BucketState, now: float | None = None) -> BucketState:
    """
    Add the tokens earned since the last refill.

    Once a whole window has elapsed the bucket is simply set back to
    full rather than accumulating elapsed * rate, which would drift
    after long idle periods.
    """
    now = now_ms() if now is None else now
    elapsed = now - bucket.last_refill

    if elapsed < 0:
        # Clock went backwards; earn nothing and keep the old reference point.
        return bucket

    if elapsed >= bucket.window:
        return replace(bucket, tokens=float(bucket.burst_capacity), last_refill=now)

    tokens = min(
        float(bucket.burst_capacity),
        bucket.tokens + elapsed * bucket.refill_rate,
    )
    return replace(bucket, tokens=tokens, last_refill=now)


def consume_token(
    bucket: BucketState,
    now: float | None = None,
) -> tuple[BucketState, RateLimitResult]:
    """
    Refill, then try to take one token.

    Returns the new bucket together with the outcome. On denial the
    returned bucket carries the refill but no debit, and `retry_after`
    is the minimum wait until one whole token exists. `reset_time` is
    always the next refill milestone, last_refill + window.
    """
    bucket = refill_bucket(bucket, now)
    reset_time = bucket.last_refill + bucket.window

    if bucket.tokens >= 1:
        bucket = replace(bucket, tokens=bucket.tokens - 1)
        return bucket, RateLimitResult(
            allowed=True,
            remaining=math.floor(bucket.tokens),
            reset_time=reset_time,
        )

    retry_after = math.ceil((1 - bucket.tokens) / bucket.refill_rate)
    return bucket, RateLimitResult(
        allowed=False,
        remaining=0,
        reset_time=reset_time,
        retry_after=retry_after,
    )


def get_bucket_info(bucket: BucketState, now: float | None = None) -> BucketInfo:
    """Report what the bucket would hold right now, without touching storage."""
    bucket = refill_bucket(bucket, now)
    return BucketInfo(
        tokens=math.floor(bucket.tokens),
        capacity=bucket.capacity,
        last_refill=bucket.last_refill,
        next_refill=bucket.last_refill + bucket.window,
    )
