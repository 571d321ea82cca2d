from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code that
    clients can switch on:
    - validation_error / invalid_credentials (400)
    - unauthenticated / token_invalid / token_expired / token_invalidated (401)
    - forbidden / verification_required (403)
    - not_found (404)
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


class InvalidCredentialsError(ValidationError):
    """Unknown username or wrong password; both look the same to the caller."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication missing (401)."""
    status_code = 401
    error_code = "unauthenticated"


class TokenInvalidError(AuthenticationError):
    """Bad signature, wrong token type, or refresh token not in the ledger."""
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    """Token is past its exp claim; clients should refresh rather than re-login."""
    error_code = "token_expired"

    def __init__(self, message: str = "Token expired", **kwargs) -> None:
        kwargs.setdefault("detail", {"tokenExpired": True})
        super().__init__(message, **kwargs)


class TokenInvalidatedError(AuthenticationError):
    """Token was explicitly blacklisted."""
    error_code = "token_invalidated"

    def __init__(self, message: str = "Token has been invalidated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class VerificationRequiredError(ForbiddenError):
    """Login attempted before the email address was verified (403)."""
    error_code = "verification_required"

    def __init__(self, message: str, **kwargs) -> None:
        kwargs.setdefault("detail", {"requiresVerification": True})
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


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


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentialsError",
    "AuthenticationError",
    "TokenInvalidError",
    "TokenExpiredError",
    "TokenInvalidatedError",
    "ForbiddenError",
    "VerificationRequiredError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
