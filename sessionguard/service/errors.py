from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - validation_error (400)
    - unauthorized (401)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidEmail(ValidationError):
    """Email address is empty, too long, or not a syntactically valid address."""

    def __init__(self, message: str = "invalid email") -> None:
        super().__init__(message)


class PolicyViolation(ValidationError):
    """Password does not satisfy the password policy."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class OAuthError(ValidationError):
    """Federated login was rejected; message is one of a fixed set."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    # Whether the HTTP layer should also clear the session cookie
    clear_session_cookie = False


class SessionNotFound(AuthenticationError):
    """No live session matches the presented token (401)."""
    clear_session_cookie = True

    def __init__(self, message: str = "unauthorized") -> None:
        super().__init__(message)


class SessionExpired(AuthenticationError):
    """Session exceeded its idle timeout or absolute lifetime (401)."""
    clear_session_cookie = True

    def __init__(self, message: str = "unauthorized") -> None:
        super().__init__(message)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UnavailableError(ServiceError):
    """A downstream store or provider is unreachable (503)."""
    status_code = 503
    error_code = "unavailable"


class MalformedHash(ValueError):
    """Encoded password hash cannot be parsed."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidEmail",
    "PolicyViolation",
    "OAuthError",
    "AuthenticationError",
    "SessionNotFound",
    "SessionExpired",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UnavailableError",
    "MalformedHash",
]
