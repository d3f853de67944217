from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error taxonomy shared by the hooks and the middleware."""

    ACCOUNT_NOT_FOUND = "account_not_found"
    ACCOUNT_NOT_ACTIVE = "account_not_active"
    ACCOUNT_LOCKED = "account_locked"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    MFA_NOT_CONFIGURED = "mfa_not_configured"
    INVALID_CONFIGURATION = "invalid_configuration"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    INVALID_INVITATION = "invalid_invitation"
    DUPLICATE_ACCOUNT = "duplicate_account"
    INVALID_MEDICAL_LICENSE = "invalid_medical_license"
    UNAUTHORIZED = "unauthorized"
    INVALID_SESSION = "invalid_session"
    SESSION_EXPIRED = "session_expired"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation_error"


class ServiceError(Exception):
    """Base class for gate rejections.

    Each subclass pins an ``ErrorKind`` plus the HTTP status and error code
    used when the error crosses the HTTP boundary:
    - unauthorized (401)
    - forbidden (403)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: ErrorKind = ErrorKind.VALIDATION

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
    """Request or attribute validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    kind = ErrorKind.VALIDATION


class InvalidConfigurationError(ServiceError):
    """Unrecognized user pool or account variant (500)."""
    status_code = 500
    error_code = "server_error"
    kind = ErrorKind.INVALID_CONFIGURATION


class AuthenticationError(ServiceError):
    """Login or request blocked (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = ErrorKind.UNAUTHORIZED


class AccountNotFoundError(AuthenticationError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND


class AccountNotActiveError(AuthenticationError):
    kind = ErrorKind.ACCOUNT_NOT_ACTIVE


class AccountLockedError(AuthenticationError):
    kind = ErrorKind.ACCOUNT_LOCKED


class EmailNotVerifiedError(AuthenticationError):
    kind = ErrorKind.EMAIL_NOT_VERIFIED


class MfaNotConfiguredError(AuthenticationError):
    kind = ErrorKind.MFA_NOT_CONFIGURED


class UnauthorizedError(AuthenticationError):
    """Token missing, invalid, expired, incomplete or revoked."""
    kind = ErrorKind.UNAUTHORIZED


class InvalidSessionError(AuthenticationError):
    kind = ErrorKind.INVALID_SESSION


class SessionExpiredError(AuthenticationError):
    """Session ended after exceeding its inactivity timeout."""
    kind = ErrorKind.SESSION_EXPIRED


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = ErrorKind.FORBIDDEN


class InvalidInvitationError(ServiceError):
    """Missing, expired, used or mismatched invitation (400)."""
    status_code = 400
    error_code = "validation_error"
    kind = ErrorKind.INVALID_INVITATION


class InvalidMedicalLicenseError(ValidationError):
    kind = ErrorKind.INVALID_MEDICAL_LICENSE


class DuplicateAccountError(ServiceError):
    """Account already exists for the email (409)."""
    status_code = 409
    error_code = "conflict"
    kind = ErrorKind.DUPLICATE_ACCOUNT


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded (429); ``scope`` is ip, email, user or auth."""
    status_code = 429
    error_code = "rate_limited"
    kind = ErrorKind.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str, *, scope: str, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail={"scope": scope, **(detail or {})})
        self.scope = scope


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "InvalidConfigurationError",
    "AuthenticationError",
    "AccountNotFoundError",
    "AccountNotActiveError",
    "AccountLockedError",
    "EmailNotVerifiedError",
    "MfaNotConfiguredError",
    "UnauthorizedError",
    "InvalidSessionError",
    "SessionExpiredError",
    "ForbiddenError",
    "InvalidInvitationError",
    "InvalidMedicalLicenseError",
    "DuplicateAccountError",
    "RateLimitExceededError",
]
