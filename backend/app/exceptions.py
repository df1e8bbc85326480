"""Custom exceptions for the backend application."""

from typing import Any


class BackendError(Exception):
    """Base class for backend exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    Extra keyword arguments become context fields of the error envelope.
    """
    status_code: int = 500

    def __init__(self, message: str = "Internal server error", **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        """Render the ``{success: false, error, ...context}`` envelope."""
        return {"success": False, "error": self.message, **self.context}


class RateLimitExceededError(BackendError):
    """Raised when a client has used up its request quota for the window.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429

    def __init__(self, message: str, retry_after: int):
        self.retry_after = retry_after
        super().__init__(message, retryAfter=retry_after)


class CorsOriginError(BackendError):
    """Raised when a cross-origin request comes from a disallowed origin.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403

    def __init__(self, origin: str):
        self.origin = origin
        super().__init__("Not allowed by CORS", origin=origin)


class PayloadTooLargeError(BackendError):
    """Raised when a request body exceeds the configured limit.

    Maps to HTTP 413 Payload Too Large.
    """
    status_code = 413

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"Request body too large. Maximum allowed: {limit} bytes",
            limit=limit,
        )


class MalformedBodyError(BackendError):
    """Raised when a JSON request body cannot be parsed.

    Maps to HTTP 400 Bad Request.
    """
    status_code = 400

    def __init__(self, message: str = "Malformed JSON body"):
        super().__init__(message)


class DatabaseConnectionError(BackendError):
    """Raised when the document database cannot be reached."""
    status_code = 503

    def __init__(self, message: str = "Database connection failed"):
        super().__init__(message)
