"""
Service layer exceptions.

Cache misses are never errors: lookups return None.
"""

from typing import Any


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "error": type(self).__name__,
            "message": str(self),
            "context": self.context,
        }


class NetworkError(ServiceError):
    """Transport failure, non-2xx status or timeout. Retryable."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        status: int | None = None,
        attempts: int | None = None,
    ):
        self.status = status
        self.attempts = attempts
        super().__init__(message, context)

    @property
    def has_response(self) -> bool:
        """True if the server answered (with a non-2xx status)."""
        return self.status is not None


class RequestTimeoutError(NetworkError):
    """A single attempt exceeded its timeout."""

    def __init__(self, url: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Request to '{url}' timed out after {timeout:.1f}s",
            context={"url": url, "timeout": timeout},
        )


class ValidationError(ServiceError):
    """Malformed payload or configuration. Never retried."""

    pass


class StorageError(ServiceError):
    """The persistent store rejected a write."""

    pass


class CacheError(ServiceError):
    """Cache operation failed (e.g. value could not be serialized)."""

    pass
