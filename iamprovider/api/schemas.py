from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from iamprovider.service.auth import AuthResult, SessionView
from iamprovider.service.errors import ErrorKind
from iamprovider.storage.models import PasskeyCredential, User

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(kind.value for kind in ErrorKind)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """New passwords: 8-128 characters with upper, lower, digit and symbol."""
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[A-Z]", value):
        raise ValueError("password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("password must contain at least one number")
    if not re.search(r"[^A-Za-z0-9]", value):
        raise ValueError("password must contain at least one special character")
    return value


def _validate_callback_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if not re.match(r"^https?://[^\s/$.?#][^\s]*$", value):
        raise ValueError("callback_url must be an absolute http(s) URL")
    return value


class _EmailPayload(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_email_field(cls, value: str) -> str:
        return _validate_email(value)


class _NewPasswordPayload(BaseModel):
    @field_validator("password", "new_password", check_fields=False)
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


# auth requests
class RegisterRequest(_EmailPayload, _NewPasswordPayload):
    password: str
    display_name: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    callback_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("callback_url")
    @classmethod
    def _validate_callback(cls, value: Optional[str]) -> Optional[str]:
        return _validate_callback_url(value)


class LoginRequest(_EmailPayload):
    # Existing passwords predate the strength rules
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)


class ReactivateRequest(LoginRequest):
    pass


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(TokenRefreshRequest):
    pass


class IntrospectRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=8192)


class ResendVerificationRequest(_EmailPayload):
    callback_url: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("callback_url")
    @classmethod
    def _validate_callback(cls, value: Optional[str]) -> Optional[str]:
        return _validate_callback_url(value)


class ForgotPasswordRequest(ResendVerificationRequest):
    pass


class PasswordResetConfirm(_NewPasswordPayload):
    token: str = Field(..., max_length=8192)
    new_password: str


class SetPasswordRequest(_NewPasswordPayload):
    password: str


class PasswordChangeRequest(_NewPasswordPayload):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str
    refresh_token: Optional[str] = Field(
        default=None,
        max_length=2048,
        description="Session to keep signed in; every other session is revoked",
    )


class DeactivateRequest(BaseModel):
    password: Optional[str] = Field(default=None, max_length=PASSWORD_MAX_LENGTH)


# passkeys
class PasskeyRegisterVerifyRequest(BaseModel):
    response: Dict[str, Any]
    display_name: str = Field(..., min_length=1, max_length=100)


class PasskeyLoginOptionsRequest(_EmailPayload):
    pass


class PasskeyLoginVerifyRequest(_EmailPayload):
    response: Dict[str, Any]


# oauth
class OAuthStartResponse(BaseModel):
    authorization_url: str
    state: str
    provider: str


class OAuthLinkRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=2048)
    state: str = Field(..., min_length=1, max_length=128)


# admin users
class CreateUserRequest(_EmailPayload):
    password: Optional[str] = None
    display_name: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    is_admin: bool = False
    is_email_verified: bool = False

    @field_validator("password")
    @classmethod
    def _validate_optional_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_strength(value) if value is not None else None


class UpdateUserRequest(BaseModel):
    """Admin edit; only fields present in the JSON body are written."""

    email: Optional[str] = None
    display_name: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=50)
    last_name: Optional[str] = Field(default=None, max_length=50)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    is_admin: Optional[bool] = None
    is_email_verified: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _validate_optional_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


# responses
class ExternalIdentityResponse(BaseModel):
    provider: str
    provider_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class UserResponse(BaseModel):
    id: str
    email: str
    is_admin: bool
    is_email_verified: bool
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool
    has_password: bool
    oauth_providers: List[ExternalIdentityResponse] = Field(default_factory=list)
    passkey_count: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            is_admin=user.is_admin,
            is_email_verified=user.is_email_verified,
            display_name=user.display_name,
            first_name=user.first_name,
            last_name=user.last_name,
            avatar_url=user.avatar_url,
            is_active=user.is_active,
            has_password=user.has_password,
            oauth_providers=[
                ExternalIdentityResponse(
                    provider=identity.provider,
                    provider_id=identity.provider_id,
                    email=identity.email,
                    display_name=identity.display_name,
                )
                for identity in user.external_identities
            ],
            passkey_count=len(user.passkeys),
            last_login_at=user.last_login_at,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: Literal["Bearer"] = "Bearer"
    verification_url: Optional[str] = None

    @classmethod
    def from_result(
        cls, result: AuthResult, *, verification_url: Optional[str] = None
    ) -> "AuthResponse":
        return cls(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            verification_url=verification_url,
        )


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: Literal["Bearer"] = "Bearer"


class SessionResponse(BaseModel):
    id: str
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    is_current: bool

    @classmethod
    def from_view(cls, view: SessionView) -> "SessionResponse":
        return cls(
            id=view.id,
            device_fingerprint=view.device_fingerprint,
            user_agent=view.user_agent,
            ip_address=view.ip_address,
            created_at=view.created_at,
            expires_at=view.expires_at,
            is_current=view.is_current,
        )


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int


class PasskeyResponse(BaseModel):
    credential_id: str
    display_name: str
    device_type: str
    backed_up: bool
    transports: Optional[List[str]] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_passkey(cls, passkey: PasskeyCredential) -> "PasskeyResponse":
        return cls(
            credential_id=passkey.credential_id,
            display_name=passkey.display_name,
            device_type=passkey.device_type,
            backed_up=passkey.backed_up,
            transports=passkey.transports,
            created_at=passkey.created_at,
            last_used_at=passkey.last_used_at,
        )


class UserListResponse(BaseModel):
    users: List[UserResponse]
    total: int
    limit: int
    skip: int
    has_more: bool


class RevokedSessionsResponse(BaseModel):
    revoked_sessions: int


class MessageResponse(BaseModel):
    message: str
