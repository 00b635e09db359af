"""
Cache Domain Exceptions

Error taxonomy for cache and backing store operations.
Backing store failures always preserve the original error as __cause__.
"""

from typing import Any, Dict, Optional


class CacheException(Exception):
    """Base exception for cache engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(CacheException):
    """Backing store holds no value for the key. Surfaces to callers as a miss."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            message=f"Key not found in backing store: {key}",
            error_code="NOT_FOUND",
            details={"key": key},
        )


class BackingStoreException(CacheException):
    """Raised when a backing store load or save fails."""

    def __init__(
        self,
        message: str = "Backing store operation failed",
        operation: Optional[str] = None,
        key: Optional[str] = None,
        original_error: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if key is not None:
            details["key"] = key
        if original_error is not None:
            details["original_error"] = str(original_error)
            details["original_error_type"] = type(original_error).__name__

        super().__init__(
            message=message, error_code="BACKING_STORE_ERROR", details=details
        )
        self.key = key
        self.operation = operation
        if original_error is not None:
            self.__cause__ = original_error


class BackingStoreTimeoutException(BackingStoreException):
    """Raised when a backing store call exceeds its timeout."""

    def __init__(
        self, operation: str, timeout_seconds: float, key: Optional[str] = None
    ):
        super().__init__(
            message=f"Backing store operation '{operation}' timed out after {timeout_seconds}s",
            operation=operation,
            key=key,
        )
        self.error_code = "BACKING_STORE_TIMEOUT"
        self.timeout_seconds = timeout_seconds
        self.details["timeout_seconds"] = timeout_seconds


class InvalidTTLException(CacheException):
    """Raised for zero, negative or out of range TTL values."""

    def __init__(self, ttl: Any, reason: str = "TTL must be positive"):
        super().__init__(
            message=f"Invalid TTL {ttl!r}: {reason}",
            error_code="INVALID_TTL",
            details={"ttl": str(ttl)},
        )


class CapacityMisconfiguredException(CacheException):
    """Raised when the configured capacity cannot hold any entry."""

    def __init__(self, capacity: Any):
        super().__init__(
            message=f"Cache capacity must be a positive integer, got {capacity!r}",
            error_code="CAPACITY_MISCONFIGURED",
            details={"capacity": str(capacity)},
        )


class FlushExhaustedException(CacheException):
    """A write-behind entry failed every persistence attempt."""

    def __init__(
        self,
        key: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {"key": key, "attempts": attempts}
        if last_error is not None:
            details["last_error"] = str(last_error)
            details["last_error_type"] = type(last_error).__name__

        super().__init__(
            message=f"Write-behind flush for '{key}' failed after {attempts} attempts",
            error_code="FLUSH_EXHAUSTED",
            details=details,
        )
        self.key = key
        self.attempts = attempts
        if last_error is not None:
            self.__cause__ = last_error


class CacheClosedException(CacheException):
    """Raised when writing to a cache that has been shut down."""

    def __init__(self, message: str = "Cache has been shut down"):
        super().__init__(message=message, error_code="CACHE_CLOSED")


# Short names used throughout the engine
NotFound = NotFoundException
BackingStoreError = BackingStoreException
BackingStoreTimeout = BackingStoreTimeoutException
InvalidTTL = InvalidTTLException
CapacityMisconfigured = CapacityMisconfiguredException
FlushExhausted = FlushExhaustedException
