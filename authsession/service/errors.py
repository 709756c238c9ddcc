from __future__ import annotations

from typing import Optional

# Public message for every revocation, expiry or signature failure. The exact
# cause is kept on the exception for logging only.
SESSION_INVALID_MESSAGE = "session invalid, log in again"
INVALID_CREDENTIALS_MESSAGE = "email or password incorrect"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Wrong email or password. Never says which."""

    def __init__(self, message: str = INVALID_CREDENTIALS_MESSAGE, **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthorizedError(AuthenticationError):
    """Missing or unusable credentials."""

    default_reason = "unauthorized"

    def __init__(
        self,
        message: str = SESSION_INVALID_MESSAGE,
        *,
        reason: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason or self.default_reason


class MalformedTokenError(UnauthorizedError):
    default_reason = "malformed"


class TokenExpiredError(UnauthorizedError):
    default_reason = "expired"


class TokenInvalidSignatureError(UnauthorizedError):
    default_reason = "invalid_signature"


class TokenBlacklistedError(UnauthorizedError):
    default_reason = "blacklisted"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class SessionNotFoundError(NotFoundError):
    """No live session matches; logout treats this as success."""

    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Throttle triggered (429); retry_after is in whole seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        retry_after: int,
        message: str = "too many attempts, try again later",
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "SESSION_INVALID_MESSAGE",
    "INVALID_CREDENTIALS_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "UnauthorizedError",
    "MalformedTokenError",
    "TokenExpiredError",
    "TokenInvalidSignatureError",
    "TokenBlacklistedError",
    "NotFoundError",
    "SessionNotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
