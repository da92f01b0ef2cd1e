from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds returned by the credential services."""

    INVALID_CREDENTIALS = "invalid_credentials"
    USER_NOT_VERIFIED = "user_not_verified"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"
    DUPLICATE_EMAIL = "duplicate_email"
    INVALID_TOKEN = "invalid_token"
    TOKEN_REVOKED = "token_revoked"
    USER_NOT_FOUND = "user_not_found"
    VALIDATION_ERROR = "validation_error"
    ROLE_NOT_FOUND = "role_not_found"
    DUPLICATE_ROLE = "duplicate_role"


class ServiceError(Exception):
    """Base class for service-layer failures.

    Every subclass is tagged with an ``ErrorKind`` so callers can match on
    ``err.kind``. ``status_code`` and ``error_code`` are carried for the HTTP
    layer:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "validation failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "invalid credentials"


class UserNotVerifiedError(AuthenticationError):
    kind = ErrorKind.USER_NOT_VERIFIED
    status_code = 403
    error_code = "email_not_verified"
    default_message = "email not verified"


class AccountLockedError(AuthenticationError):
    kind = ErrorKind.ACCOUNT_LOCKED
    status_code = 423
    error_code = "account_locked"
    default_message = "account is locked"


class AccountDisabledError(AuthenticationError):
    kind = ErrorKind.ACCOUNT_DISABLED
    status_code = 403
    error_code = "account_disabled"
    default_message = "account is deactivated"


class InvalidTokenError(AuthenticationError):
    kind = ErrorKind.INVALID_TOKEN
    default_message = "invalid or expired token"


class TokenRevokedError(AuthenticationError):
    kind = ErrorKind.TOKEN_REVOKED
    default_message = "token has been revoked"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class UserNotFoundError(NotFoundError):
    kind = ErrorKind.USER_NOT_FOUND
    default_message = "user not found"


class RoleNotFoundError(NotFoundError):
    kind = ErrorKind.ROLE_NOT_FOUND
    default_message = "role not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    kind = ErrorKind.DUPLICATE_EMAIL
    default_message = "email already exists"


class DuplicateRoleError(ConflictError):
    kind = ErrorKind.DUPLICATE_ROLE
    default_message = "role name already exists"


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "UserNotVerifiedError",
    "AccountLockedError",
    "AccountDisabledError",
    "InvalidTokenError",
    "TokenRevokedError",
    "NotFoundError",
    "UserNotFoundError",
    "RoleNotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "DuplicateRoleError",
]
