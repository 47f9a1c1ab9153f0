from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - gone (410)
    - not_found (404)
    - invalid_state / invalid_otp / validation_error (400)
    - unauthorized / token_expired / token_malformed / token_type_mismatch (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited (429)
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


class InvalidStateError(ServiceError):
    """Session exists but belongs to a different flow (400)."""
    status_code = 400
    error_code = "invalid_state"


class InvalidOtpError(ServiceError):
    """Supplied one-time passcode does not match (400)."""
    status_code = 400
    error_code = "invalid_otp"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Session has expired (401)."""
    pass


class TokenError(AuthenticationError):
    """Bearer token rejected (401)."""
    pass


class TokenExpiredError(TokenError):
    """Token signature is valid but ``exp`` has passed. Re-authenticate."""
    error_code = "token_expired"


class TokenMalformedError(TokenError):
    """Token cannot be decoded or its signature is invalid."""
    error_code = "token_malformed"


class TokenTypeMismatchError(TokenError):
    """Access token presented where a refresh token is expected, or vice versa."""
    error_code = "token_type_mismatch"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class GoneError(ServiceError):
    """Session expired, consumed or deleted (410)."""
    status_code = 410
    error_code = "gone"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        detail = dict(detail or {})
        if retry_after is not None:
            detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidStateError",
    "InvalidOtpError",
    "AuthenticationError",
    "SessionExpiredError",
    "TokenError",
    "TokenExpiredError",
    "TokenMalformedError",
    "TokenTypeMismatchError",
    "ForbiddenError",
    "NotFoundError",
    "GoneError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
