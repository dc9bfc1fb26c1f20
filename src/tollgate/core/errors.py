"""
Exception hierarchy for tollgate.

Denial is not an error: `check` and `consume` always return a result.
Exceptions are reserved for misconfiguration, for the `limit` wrappers
that turn a denial into a failure, and for storage payloads that
cannot be decoded. Any other backend exception (connection errors,
timeouts) propagates untouched.
"""

from tollgate.core.types import RateLimitResult


class TollgateError(Exception):
    """Base class for all tollgate errors."""


class ConfigurationError(TollgateError, ValueError):
    """Invalid limiter or retry configuration. Raised at construction."""


class StorageError(TollgateError):
    """A bundled storage backend found a value it cannot decode."""


class RateLimitExceeded(TollgateError):
    """
    Raised by the `limit` wrappers when an operation is not admitted.

    Attributes:
        result: The last denial returned by the limiter.
    """

    def __init__(self, message: str, result: RateLimitResult) -> None:
        super().__init__(message)
        self.result = result

    @property
    def retry_after(self) -> float | None:
        """Milliseconds until a token is expected to be available."""
        return self.result.retry_after

    @property
    def key(self) -> str:
        return self.result.key


class RetryCancelled(RateLimitExceeded):
    """The cancellation signal was set between retry attempts."""
