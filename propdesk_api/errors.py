"""
PropDesk API Client Error Classes

Every failure surfaced by the client is an ApiError subclass carrying the
HTTP status (0 when no response was received) and the server-provided body.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ApiError(Exception):
    """Base error class for the PropDesk API client."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 0,
        details: Optional[Dict[str, Any]] = None,
        data: Any = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.data = data
        self.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "name": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
            "details": self.details,
            "data": self.data,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class NetworkError(ApiError):
    """Network error (connection refused, DNS failure, dropped connection)."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = True,
        code: str = "NETWORK_ERROR",
    ):
        super().__init__(code, message, 0, details)
        self.retryable = retryable


class RequestTimeoutError(NetworkError):
    """A single attempt exceeded its timeout."""

    def __init__(self, timeout: float):
        super().__init__("Request timeout", {"timeout": timeout}, code="TIMEOUT")
        self.timeout = timeout


class HttpError(ApiError):
    """Non-2xx response from the backend."""

    def __init__(
        self,
        status_code: int,
        message: Optional[str] = None,
        data: Any = None,
        code: str = "HTTP_ERROR",
    ):
        super().__init__(code, message or f"HTTP {status_code}", status_code, data=data)

    @classmethod
    def from_response_body(cls, status_code: int, body: Any) -> "HttpError":
        """Create the matching error subclass from a status code and parsed body."""
        message = extract_message(body) or f"HTTP {status_code}"
        error_class = STATUS_ERRORS.get(status_code, HttpError)
        if error_class is HttpError:
            return HttpError(status_code, message, body)
        return error_class(message, data=body)


class ValidationError(HttpError):
    """Validation error (invalid input, 400)."""

    def __init__(self, message: str, data: Any = None):
        super().__init__(400, message, data, code="VALIDATION_ERROR")


class AuthenticationError(HttpError):
    """Authentication denied (401 that cannot be recovered by a refresh)."""

    def __init__(self, message: str = "Authentication required", data: Any = None):
        super().__init__(401, message, data, code="AUTHENTICATION_FAILED")


class AuthorizationError(HttpError):
    """Authorization denied (403). Never triggers a token refresh."""

    def __init__(self, message: str = "Forbidden", data: Any = None):
        super().__init__(403, message, data, code="FORBIDDEN")


class NotFoundError(HttpError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found", data: Any = None):
        super().__init__(404, message, data, code="NOT_FOUND")


class TokenRefreshError(ApiError):
    """Token refresh failed; the session has been cleared."""

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("TOKEN_REFRESH_FAILED", message, 401, details)


class RequestCancelledError(ApiError):
    """The caller aborted the request through its abort signal."""

    def __init__(self, message: str = "Request cancelled"):
        super().__init__("REQUEST_CANCELLED", message, 0)


class ConfigurationError(ApiError):
    """Configuration error."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, 0, details)


STATUS_ERRORS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
}


def extract_message(body: Any) -> Optional[str]:
    """Pull the server message out of `{message}` or `{error: {message}}` bodies."""
    if not isinstance(body, dict):
        return None
    if isinstance(body.get("message"), str):
        return body["message"]
    error = body.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(error, str):
        return error
    return None


def is_api_error(error: Any) -> bool:
    """Check if error is an ApiError."""
    return isinstance(error, ApiError)


def is_retryable_error(error: Any) -> bool:
    """Check if error is retryable."""
    if isinstance(error, NetworkError):
        return error.retryable
    if isinstance(error, HttpError):
        # Retry on server errors (5xx)
        return 500 <= error.status_code < 600
    return False
