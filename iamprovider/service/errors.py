from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, Optional


class ErrorKind(str, Enum):
    """Closed set of error codes surfaced in the response envelope."""

    # Generic boundary errors
    VALIDATION_ERROR = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"

    # Identity outcomes
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_PENDING_DELETION = "account_pending_deletion"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_INVALID = "token_invalid"
    USER_NOT_FOUND = "user_not_found"
    DUPLICATE_EMAIL = "duplicate_email"
    PASSWORD_ALREADY_SET = "password_already_set"
    PASSWORD_NOT_ENABLED = "password_not_enabled"
    PASSKEY_CHALLENGE_EXPIRED = "passkey_challenge_expired"
    PASSKEY_NOT_FOUND = "passkey_not_found"
    PASSKEY_VERIFICATION_FAILED = "passkey_verification_failed"
    OAUTH_ALREADY_LINKED = "oauth_already_linked"
    CANNOT_UNLINK_ONLY_AUTH_METHOD = "cannot_unlink_only_auth_method"


ERROR_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.SERVER_ERROR: 500,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_LOCKED: 423,
    ErrorKind.ACCOUNT_PENDING_DELETION: 403,
    ErrorKind.EMAIL_NOT_VERIFIED: 403,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.TOKEN_INVALID: 401,
    ErrorKind.USER_NOT_FOUND: 404,
    ErrorKind.DUPLICATE_EMAIL: 409,
    ErrorKind.PASSWORD_ALREADY_SET: 409,
    ErrorKind.PASSWORD_NOT_ENABLED: 400,
    ErrorKind.PASSKEY_CHALLENGE_EXPIRED: 400,
    ErrorKind.PASSKEY_NOT_FOUND: 404,
    ErrorKind.PASSKEY_VERIFICATION_FAILED: 400,
    ErrorKind.OAUTH_ALREADY_LINKED: 409,
    ErrorKind.CANNOT_UNLINK_ONLY_AUTH_METHOD: 400,
}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Subclasses pin a ``kind``; the HTTP status always comes from
    ``ERROR_STATUS`` unless a caller overrides it explicitly.
    """

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    default_message: str = "request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self._status_override = status_code
        self.detail = detail or {}

    @property
    def status_code(self) -> int:
        if self._status_override is not None:
            return self._status_override
        return ERROR_STATUS[self.kind]

    @property
    def error_code(self) -> str:
        return self.kind.value


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    kind = ErrorKind.VALIDATION_ERROR
    default_message = "validation failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    kind = ErrorKind.UNAUTHORIZED
    default_message = "authentication required"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    kind = ErrorKind.FORBIDDEN
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    kind = ErrorKind.NOT_FOUND
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    kind = ErrorKind.CONFLICT
    default_message = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    kind = ErrorKind.RATE_LIMITED
    default_message = "too many requests"


class ServerError(ServiceError):
    """Internal server error (500)."""
    kind = ErrorKind.SERVER_ERROR
    default_message = "internal server error"


class InvalidCredentialsError(ServiceError):
    kind = ErrorKind.INVALID_CREDENTIALS
    default_message = "invalid email or password"


class AccountLockedError(ServiceError):
    kind = ErrorKind.ACCOUNT_LOCKED
    default_message = "account is temporarily locked"

    def __init__(self, lockout_until: datetime) -> None:
        super().__init__(detail={"lockout_until": lockout_until.isoformat()})
        self.lockout_until = lockout_until


class AccountPendingDeletionError(ServiceError):
    kind = ErrorKind.ACCOUNT_PENDING_DELETION
    default_message = "account is scheduled for deletion"

    def __init__(self, deletion_date: datetime) -> None:
        super().__init__(detail={"deletion_date": deletion_date.isoformat()})
        self.deletion_date = deletion_date


class EmailNotVerifiedError(ServiceError):
    kind = ErrorKind.EMAIL_NOT_VERIFIED
    default_message = "email address has not been verified"


class TokenExpiredError(ServiceError):
    kind = ErrorKind.TOKEN_EXPIRED
    default_message = "token has expired"


class TokenInvalidError(ServiceError):
    kind = ErrorKind.TOKEN_INVALID
    default_message = "token is invalid"

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__(
            f"token is invalid: {reason}" if reason else None,
            detail={"reason": reason} if reason else None,
        )
        self.reason = reason


class UserNotFoundError(ServiceError):
    kind = ErrorKind.USER_NOT_FOUND
    default_message = "user not found"


class DuplicateEmailError(ServiceError):
    kind = ErrorKind.DUPLICATE_EMAIL
    default_message = "email already exists"


class PasswordAlreadySetError(ServiceError):
    kind = ErrorKind.PASSWORD_ALREADY_SET
    default_message = "password is already set for this account"


class PasswordNotEnabledError(ServiceError):
    kind = ErrorKind.PASSWORD_NOT_ENABLED
    default_message = "password sign-in is not enabled for this account"


class PasskeyChallengeExpiredError(ServiceError):
    kind = ErrorKind.PASSKEY_CHALLENGE_EXPIRED
    default_message = "passkey challenge expired or not found"


class PasskeyNotFoundError(ServiceError):
    kind = ErrorKind.PASSKEY_NOT_FOUND
    default_message = "passkey not found"


class PasskeyVerificationFailedError(ServiceError):
    kind = ErrorKind.PASSKEY_VERIFICATION_FAILED
    default_message = "passkey verification failed"


class OAuthAlreadyLinkedError(ServiceError):
    kind = ErrorKind.OAUTH_ALREADY_LINKED
    default_message = "this provider account is already linked to another user"


class CannotUnlinkOnlyAuthMethodError(ServiceError):
    kind = ErrorKind.CANNOT_UNLINK_ONLY_AUTH_METHOD
    default_message = "cannot unlink the only remaining sign-in method"


__all__ = [
    "ERROR_STATUS",
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountPendingDeletionError",
    "EmailNotVerifiedError",
    "TokenExpiredError",
    "TokenInvalidError",
    "UserNotFoundError",
    "DuplicateEmailError",
    "PasswordAlreadySetError",
    "PasswordNotEnabledError",
    "PasskeyChallengeExpiredError",
    "PasskeyNotFoundError",
    "PasskeyVerificationFailedError",
    "OAuthAlreadyLinkedError",
    "CannotUnlinkOnlyAuthMethodError",
]
