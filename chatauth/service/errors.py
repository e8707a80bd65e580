from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code carried in the response envelope:
    - validation_error (400)
    - unauthorized / invalid_credentials / invalid_token / token_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)

    Store outages are not ServiceErrors; the API maps StoreUnavailableError
    to service_unavailable (503) directly.
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
    """Wrong password or unknown account; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Malformed token, bad signature, wrong issuer or wrong token type."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredTokenError(AuthenticationError):
    """Structurally valid token past its expiry."""
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class AccountLockedError(ServiceError):
    """Account is temporarily locked after repeated failed logins (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, retry_after: int, message: str = "account temporarily locked") -> None:
        self.retry_after = max(0, int(retry_after))
        super().__init__(message, detail={"retryAfter": self.retry_after})


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class RateLimitExceededError(RateLimitedError):
    """Rate limit exceeded with the number of seconds until the block lifts."""

    def __init__(self, retry_after: int, message: str = "too many requests, please try again later") -> None:
        self.retry_after = max(0, int(retry_after))
        super().__init__(message, detail={"retryAfter": self.retry_after})


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EncodingError(ServerError):
    """A token payload could not be serialized (500)."""
    error_code = "encoding_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "AccountLockedError",
    "RateLimitedError",
    "RateLimitExceededError",
    "ServerError",
    "EncodingError",
]
