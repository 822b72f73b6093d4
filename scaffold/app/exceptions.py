"""Custom exceptions for the service."""


class ScaffoldException(Exception):
    """Base class for service exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Service error"):
        self.message = message
        super().__init__(message)


class StoreUnavailableError(ScaffoldException):
    """Raised when the shared key-value store cannot be reached in time.

    Maps to HTTP 503 Service Unavailable. The middleware recovers from this
    error, so it only reaches clients when raised from a route handler.
    """
    status_code = 503
    error_code = "store_unavailable"

    def __init__(self, operation: str, detail: str | None = None):
        self.operation = operation
        message = f"Store operation '{operation}' failed"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RateLimitBackendError(StoreUnavailableError):
    """Raised by a rate limit backend when its store fails or times out."""
    error_code = "rate_limit_backend_error"


class CacheBackendError(StoreUnavailableError):
    """Raised by a cache backend when its store fails or times out."""
    error_code = "cache_backend_error"


class RateLimitExceededError(ScaffoldException):
    """Raised when a route-level limit denies a request.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, retry_after: float, message: str = "Rate limit exceeded"):
        self.retry_after = retry_after
        super().__init__(message)


class ItemNotFoundError(ScaffoldException):
    """Raised when an item does not exist.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404
    error_code = "item_not_found"

    def __init__(self, item_id: int):
        self.item_id = item_id
        super().__init__(f"Item {item_id} not found")
