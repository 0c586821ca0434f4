from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from iamprovider.config import Settings
from iamprovider.logging import get_logger
from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.email import EmailNotifier
from iamprovider.service.errors import (
    AccountLockedError,
    AccountPendingDeletionError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordAlreadySetError,
    PasswordNotEnabledError,
    ServiceError,
    TokenExpiredError,
    TokenInvalidError,
    UserNotFoundError,
)
from iamprovider.service.passwords import PasswordHasher
from iamprovider.service.tokens import IssuedTokens, TokenIssuer, hash_token
from iamprovider.storage.base import Store
from iamprovider.storage.errors import ConstraintViolation
from iamprovider.storage.models import SessionContext, User, UserPatch, new_id

logger = get_logger(__name__)


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    expires_in: int


@dataclass
class SessionView:
    id: str
    device_fingerprint: Optional[str]
    user_agent: Optional[str]
    ip_address: Optional[str]
    created_at: datetime
    expires_at: datetime
    is_current: bool


class AuthService:
    """Login, refresh, logout and account-state decisions.

    Every check in :meth:`login` runs in a fixed order and short-circuits;
    callers rely on the specific error raised for each precondition.
    """

    def __init__(
        self,
        store: Store,
        hasher: PasswordHasher,
        issuer: TokenIssuer,
        settings: Settings,
        *,
        call: Optional[BoundedCaller] = None,
        hash_call: Optional[BoundedCaller] = None,
        notifier: Optional[EmailNotifier] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.issuer = issuer
        self.settings = settings
        self._call = call or BoundedCaller(settings.store_timeout_seconds)
        self._hash_call = hash_call or BoundedCaller(None, label="hasher")
        self.notifier = notifier
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _hash(self, password: str) -> str:
        return await self._hash_call(self.hasher.hash, password)

    async def _verify(self, password: str, password_hash: str) -> bool:
        return await self._hash_call(self.hasher.verify, password, password_hash)

    async def _require_user(self, user_id: str) -> User:
        user = await self._call(self.store.find_user_by_id, user_id)
        if not user:
            raise UserNotFoundError()
        return user

    async def _result(
        self, user: User, context: Optional[SessionContext], family: Optional[str] = None
    ) -> AuthResult:
        issued = await self.issuer.issue_pair(user, context, family)
        return AuthResult(
            user=user,
            access_token=issued.access_token,
            refresh_token=issued.refresh_token,
            expires_in=issued.expires_in,
        )

    # registration
    async def register(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        context: Optional[SessionContext] = None,
    ) -> AuthResult:
        normalized = email.strip().lower()
        if await self._call(self.store.find_user_by_email, normalized):
            raise DuplicateEmailError()
        now = self._now()
        user = User(
            id=new_id(),
            email=normalized,
            password_hash=await self._hash(password),
            is_email_verified=False,
            verification_deadline=now
            + timedelta(hours=self.settings.verification_token_ttl_hours),
            display_name=display_name,
            first_name=first_name,
            last_name=last_name,
            created_at=now,
            updated_at=now,
        )
        try:
            user = await self._call(self.store.create_user, user)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise DuplicateEmailError()
            raise
        self.logger.info("user_registered", user_id=user.id)
        return await self._result(user, context)

    # login
    def _check_account_state(self, user: User, now: datetime) -> None:
        if user.is_pending_deletion(now):
            raise AccountPendingDeletionError(user.deletion_deadline)
        if not user.is_active:
            # Deactivated without a future deletion date: indistinguishable from bad credentials
            raise InvalidCredentialsError()
        if is_account_locked(user, now):
            raise AccountLockedError(user.lockout_until)

    async def _record_failed_attempt(self, user: User) -> None:
        updated = await self._call(self.store.increment_failed_login_attempts, user.id)
        attempts = updated.failed_login_attempts if updated else user.failed_login_attempts + 1
        if attempts >= self.settings.max_failed_login_attempts:
            lockout_until = self._now() + timedelta(
                minutes=self.settings.lockout_duration_minutes
            )
            await self._call(self.store.set_lockout, user.id, lockout_until)
            self.logger.warning(
                "account_locked", user_id=user.id, failed_attempts=attempts
            )
            raise AccountLockedError(lockout_until)
        self.logger.info("login_failed", user_id=user.id, failed_attempts=attempts)
        raise InvalidCredentialsError()

    async def _complete_login(
        self, user: User, context: Optional[SessionContext], *, method: str
    ) -> AuthResult:
        await self._call(self.store.reset_failed_login_attempts, user.id)
        updated = await self._call(self.store.update_last_login, user.id) or user
        result = await self._result(updated, context)
        self.logger.info("login_succeeded", user_id=updated.id, method=method)
        return result

    async def login(
        self, email: str, password: str, context: Optional[SessionContext] = None
    ) -> AuthResult:
        now = self._now()
        user = await self._call(self.store.find_user_by_email, email.strip().lower())
        if not user or not user.password_hash:
            raise InvalidCredentialsError()
        self._check_account_state(user, now)
        if not await self._verify(password, user.password_hash):
            await self._record_failed_attempt(user)
        if not user.is_email_verified:
            raise EmailNotVerifiedError()
        if self.hasher.needs_rehash(user.password_hash):
            await self._upgrade_hash(user, password)
        return await self._complete_login(user, context, method="password")

    async def _upgrade_hash(self, user: User, password: str) -> None:
        """Re-hash with the current Argon2 parameters after a successful verify."""
        password_hash = await self._hash(password)
        await self._call(self.store.update_user, user.id, UserPatch(password_hash=password_hash))
        self.logger.info("password_rehashed", user_id=user.id)

    async def login_with_passkey(
        self, user: User, context: Optional[SessionContext] = None
    ) -> AuthResult:
        """Issue tokens after a successful WebAuthn ceremony."""
        current = await self._require_user(user.id)
        self._check_account_state(current, self._now())
        return await self._complete_login(current, context, method="passkey")

    async def login_with_external_identity(
        self, user: User, context: Optional[SessionContext] = None
    ) -> AuthResult:
        current = await self._require_user(user.id)
        self._check_account_state(current, self._now())
        return await self._complete_login(current, context, method="oauth")

    # refresh / logout
    async def refresh_tokens(
        self, raw_token: str, context: Optional[SessionContext] = None
    ) -> IssuedTokens:
        token_hash = hash_token(raw_token)
        record = await self._call(self.store.find_refresh_token_by_hash, token_hash)
        if not record:
            raise TokenInvalidError()
        if record.is_revoked:
            await self._call(self.store.revoke_refresh_tokens_by_family, record.family)
            raise TokenInvalidError("revoked")
        if record.is_used:
            await self._revoke_reused_family(record.user_id, record.family)
        if record.is_expired(self._now()):
            raise TokenExpiredError()
        if not await self._call(self.store.mark_refresh_token_used, token_hash):
            # A concurrent refresh won the conditional update
            await self._revoke_reused_family(record.user_id, record.family)
        user = await self._call(self.store.find_user_by_id, record.user_id)
        if not user or not user.is_active:
            raise TokenInvalidError("user not found or inactive")
        return await self.issuer.issue_pair(user, context, record.family)

    async def _revoke_reused_family(self, user_id: str, family: str) -> None:
        revoked = await self._call(self.store.revoke_refresh_tokens_by_family, family)
        self.logger.warning(
            "refresh_token_reuse_detected", user_id=user_id, family=family, revoked=revoked
        )
        raise TokenInvalidError("reuse detected")

    async def logout(self, raw_token: str) -> None:
        record = await self._call(self.store.find_refresh_token_by_hash, hash_token(raw_token))
        if record:
            await self._call(self.store.revoke_refresh_tokens_by_family, record.family)
            self.logger.info("logout", user_id=record.user_id)

    async def logout_all(self, user_id: str) -> int:
        revoked = await self._call(self.store.revoke_all_refresh_tokens_by_user, user_id)
        self.logger.info("logout_all", user_id=user_id, revoked=revoked)
        return revoked

    async def list_sessions(
        self, user_id: str, current_refresh_token: Optional[str] = None
    ) -> List[SessionView]:
        current_hash = hash_token(current_refresh_token) if current_refresh_token else None
        tokens = await self._call(self.store.find_active_refresh_tokens_by_user, user_id)
        return [
            SessionView(
                id=token.id,
                device_fingerprint=token.device_fingerprint,
                user_agent=token.user_agent,
                ip_address=token.ip_address,
                created_at=token.created_at,
                expires_at=token.expires_at,
                is_current=current_hash is not None and token.token_hash == current_hash,
            )
            for token in tokens
        ]

    async def revoke_session(self, user_id: str, session_id: str) -> int:
        # Only the caller's own sessions are candidates
        tokens = await self._call(self.store.find_active_refresh_tokens_by_user, user_id)
        target = next((token for token in tokens if token.id == session_id), None)
        if target is None:
            raise NotFoundError("session not found")
        return await self._call(self.store.revoke_refresh_tokens_by_family, target.family)

    # access tokens
    def verify_access_token(self, token: str) -> dict[str, Any]:
        claims = self.issuer.codec.verify(token)
        if not claims.get("sub"):
            raise TokenInvalidError("missing subject")
        if "purpose" in claims:
            # Verification and reset tokens share the signing key
            raise TokenInvalidError("not an access token")
        return claims

    async def authenticate(self, token: str) -> User:
        """Resolve a bearer access token to an active user."""
        claims = self.verify_access_token(token)
        user = await self._call(self.store.find_user_by_id, claims["sub"])
        if not user or not user.is_active:
            raise TokenInvalidError("user not found or inactive")
        return user

    def introspect(self, token: str) -> dict[str, Any]:
        try:
            claims = self.verify_access_token(token)
        except (TokenExpiredError, TokenInvalidError):
            return {"active": False}
        return {
            "active": True,
            "sub": claims["sub"],
            "email": claims.get("email"),
            "isAdmin": bool(claims.get("isAdmin", False)),
            "iat": claims.get("iat"),
            "exp": claims.get("exp"),
        }

    # account lifecycle
    async def reactivate(
        self, email: str, password: str, context: Optional[SessionContext] = None
    ) -> AuthResult:
        now = self._now()
        user = await self._call(self.store.find_user_by_email, email.strip().lower())
        if not user or not user.password_hash:
            raise InvalidCredentialsError()
        if not await self._verify(password, user.password_hash):
            raise InvalidCredentialsError()
        if not user.is_pending_deletion(now):
            raise InvalidCredentialsError()
        patch = UserPatch(
            is_active=True,
            inactive_at=None,
            deletion_deadline=None,
            failed_login_attempts=0,
            lockout_until=None,
        )
        updated = await self._call(self.store.update_user, user.id, patch)
        if not updated:
            raise InvalidCredentialsError()
        self.logger.info("account_reactivated", user_id=user.id)
        return await self._complete_login(updated, context, method="reactivation")

    async def deactivate(self, user_id: str, password: Optional[str] = None) -> User:
        user = await self._require_user(user_id)
        if user.password_hash:
            if not password or not await self._verify(password, user.password_hash):
                raise InvalidCredentialsError()
        updated = await self.soft_delete(user)
        if self.notifier:
            self.notifier.account_deactivated(updated.email, updated.deletion_deadline)
        return updated

    async def soft_delete(self, user: User) -> User:
        now = self._now()
        deadline = now + timedelta(days=self.settings.inactive_account_retention_days)
        patch = UserPatch(is_active=False, inactive_at=now, deletion_deadline=deadline)
        updated = await self._call(self.store.update_user, user.id, patch)
        if not updated:
            raise UserNotFoundError()
        await self._call(self.store.revoke_all_refresh_tokens_by_user, user.id)
        self.logger.info(
            "account_deactivated", user_id=user.id, deletion_deadline=deadline.isoformat()
        )
        return updated

    async def set_password(self, user_id: str, password: str) -> User:
        user = await self._require_user(user_id)
        if user.password_hash:
            raise PasswordAlreadySetError()
        updated = await self._call(
            self.store.update_user, user.id, UserPatch(password_hash=await self._hash(password))
        )
        if not updated:
            raise UserNotFoundError()
        if self.notifier:
            self.notifier.password_changed(updated.email)
        return updated

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_refresh_token: Optional[str] = None,
    ) -> User:
        """Replace the password and end every other session."""
        user = await self._require_user(user_id)
        if not user.password_hash:
            raise PasswordNotEnabledError()
        if not await self._verify(current_password, user.password_hash):
            raise InvalidCredentialsError()
        updated = await self._call(
            self.store.update_user,
            user.id,
            UserPatch(
                password_hash=await self._hash(new_password),
                failed_login_attempts=0,
                lockout_until=None,
            ),
        )
        if not updated:
            raise UserNotFoundError()
        keep_family = None
        if keep_refresh_token:
            record = await self._call(
                self.store.find_refresh_token_by_hash, hash_token(keep_refresh_token)
            )
            if record and record.user_id == user.id:
                keep_family = record.family
        revoked = await self._call(
            self.store.revoke_other_refresh_tokens_by_user, user.id, keep_family
        )
        self.logger.info("password_changed", user_id=user.id, revoked_sessions=revoked)
        if self.notifier:
            self.notifier.password_changed(updated.email)
        return updated

    async def get_user(self, user_id: str) -> User:
        return await self._require_user(user_id)


def is_account_locked(user: User, now: Optional[datetime] = None) -> bool:
    return user.is_locked(now)


__all__ = [
    "AuthResult",
    "AuthService",
    "SessionView",
    "ServiceError",
    "is_account_locked",
]
