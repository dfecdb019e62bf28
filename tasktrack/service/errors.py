from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``
    that the API envelope exposes to clients.
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


class InvalidInputError(ValidationError):
    """Malformed identifier, password or profile field."""
    pass


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"


class AccountInactiveError(AuthenticationError):
    error_code = "account_inactive"


class MissingTokenError(AuthenticationError):
    error_code = "missing_token"


class InvalidTokenError(AuthenticationError):
    """Token failed signature, expiry or lookup checks; the client must log in again."""
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class UserExistsError(ConflictError):
    pass


class TokenAlreadyRotatedError(ConflictError):
    """A concurrent refresh rotated the same token first; retrying is safe."""
    error_code = "token_already_rotated"


class AccountLockedError(ServiceError):
    """Too many failed logins; rejected until the lockout expires (423)."""
    status_code = 423
    error_code = "account_locked"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidInputError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "MissingTokenError",
    "InvalidTokenError",
    "ForbiddenError",
    "ConflictError",
    "UserExistsError",
    "TokenAlreadyRotatedError",
    "AccountLockedError",
    "ServerError",
]
