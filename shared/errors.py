"""
Shared error handling for the Task Manager state layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class AccessLayerException(Exception):
    """Base exception for Task Manager services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(AccessLayerException):
    """Invalid or unsupported configuration."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class StoreError(AccessLayerException):
    """Base class for key-value store failures."""

    def __init__(self, code: str, message: str, operation: str, details: Optional[Dict[str, Any]] = None):
        self.operation = operation
        super().__init__(code, message, {"operation": operation, **(details or {})})


class StoreUnavailable(StoreError):
    """The store could not be reached (connection refused, timeout)."""

    def __init__(self, operation: str, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, operation, details)


class StoreOperationFailed(StoreError):
    """The store answered, but rejected the command."""

    def __init__(self, operation: str, message: str = "Store operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_OPERATION_FAILED", message, operation, details)


class InvalidCachedPayload(AccessLayerException):
    """A cached value could not be deserialized."""

    def __init__(self, key: str, message: str = "Cached payload could not be decoded"):
        self.key = key
        super().__init__("INVALID_CACHED_PAYLOAD", message, {"key": key})


class CircuitOpenError(AccessLayerException):
    """A call was short-circuited because the breaker for its class is open."""

    def __init__(self, operation_class: str, retry_in_seconds: float = 0.0):
        self.operation_class = operation_class
        self.retry_in_seconds = retry_in_seconds
        super().__init__(
            "CIRCUIT_OPEN",
            f"Circuit breaker '{operation_class}' is OPEN - blocking call",
            {"operation_class": operation_class, "retry_in_seconds": round(retry_in_seconds, 3)}
        )


class RetryExhaustedError(AccessLayerException):
    """All retry attempts for an operation failed."""

    def __init__(self, operation_class: str, last_exception: Exception, attempts: int):
        self.operation_class = operation_class
        self.last_exception = last_exception
        self.attempts = attempts
        super().__init__(
            "RETRY_EXHAUSTED",
            f"Operation '{operation_class}' failed after {attempts} attempts",
            {"operation_class": operation_class, "attempts": attempts, "error": str(last_exception)}
        )


class RateLimitError(AccessLayerException):
    """Rate limiting errors, raised by the HTTP layer for a rejected decision."""

    def __init__(self, message: str = "Rate limit exceeded", details: Optional[Dict[str, Any]] = None,
                 headers: Optional[Dict[str, str]] = None):
        self.headers = headers or {}
        super().__init__("RATE_LIMIT_ERROR", message, details)


class AuthenticationError(AccessLayerException):
    """Authentication-related errors."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)
