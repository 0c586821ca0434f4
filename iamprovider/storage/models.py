from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

MAX_EXTERNAL_IDENTITIES = 5
MAX_PASSKEYS = 5
MAX_PASSKEY_TRANSPORTS = 5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class _Unset:
    """Marker for patch fields that must be left untouched."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


@dataclass
class ExternalIdentity:
    provider: str
    provider_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    linked_at: datetime = field(default_factory=utcnow)


@dataclass
class PasskeyCredential:
    credential_id: str
    public_key: str
    counter: int
    display_name: str
    device_type: str = "singleDevice"
    backed_up: bool = False
    transports: Optional[List[str]] = None
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    is_admin: bool = False
    is_email_verified: bool = False
    verification_deadline: Optional[datetime] = None
    display_name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_active: bool = True
    inactive_at: Optional[datetime] = None
    deletion_deadline: Optional[datetime] = None
    external_identities: List[ExternalIdentity] = field(default_factory=list)
    passkeys: List[PasskeyCredential] = field(default_factory=list)
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lockout_until is None:
            return False
        return self.lockout_until > (now or utcnow())

    def is_pending_deletion(self, now: Optional[datetime] = None) -> bool:
        if self.is_active or self.deletion_deadline is None:
            return False
        return self.deletion_deadline > (now or utcnow())

    def find_passkey(self, credential_id: str) -> Optional[PasskeyCredential]:
        for passkey in self.passkeys:
            if passkey.credential_id == credential_id:
                return passkey
        return None


@dataclass
class UserPatch:
    """Explicit partial update for a :class:`User`.

    Every field defaults to ``UNSET``; only fields given a value (``None``
    included) are written by :meth:`apply`.
    """

    email: Any = UNSET
    password_hash: Any = UNSET
    is_admin: Any = UNSET
    is_email_verified: Any = UNSET
    verification_deadline: Any = UNSET
    display_name: Any = UNSET
    first_name: Any = UNSET
    last_name: Any = UNSET
    avatar_url: Any = UNSET
    is_active: Any = UNSET
    inactive_at: Any = UNSET
    deletion_deadline: Any = UNSET
    failed_login_attempts: Any = UNSET
    lockout_until: Any = UNSET
    last_login_at: Any = UNSET

    def changes(self) -> dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    def is_empty(self) -> bool:
        return not self.changes()

    def apply(self, user: User, *, now: Optional[datetime] = None) -> User:
        changes = self.changes()
        if "email" in changes and changes["email"] is not None:
            changes["email"] = changes["email"].strip().lower()
        return replace(user, **changes, updated_at=now or utcnow())


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    family: str
    expires_at: datetime
    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    is_used: bool = False
    is_revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        family: str,
        ttl_seconds: int,
        context: Optional["SessionContext"] = None,
    ) -> "RefreshToken":
        now = utcnow()
        context = context or SessionContext()
        return cls(
            id=new_id(),
            user_id=user_id,
            token_hash=token_hash,
            family=family,
            expires_at=now + timedelta(seconds=ttl_seconds),
            device_fingerprint=context.device_fingerprint,
            user_agent=context.user_agent,
            ip_address=context.ip_address,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.is_used and not self.is_revoked and not self.is_expired(now)


@dataclass
class SessionContext:
    """Request metadata recorded alongside a refresh token."""

    device_fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


@dataclass
class UserSearch:
    email: Optional[str] = None
    is_active: Optional[bool] = None
    is_email_verified: Optional[bool] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"
    limit: int = 20
    skip: int = 0


@dataclass
class UserPage:
    users: List[User]
    total: int
    limit: int
    skip: int

    @property
    def has_more(self) -> bool:
        return self.skip + len(self.users) < self.total
