from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from iamprovider.logging import get_logger
from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.email import EmailNotifier
from iamprovider.service.errors import (
    PasswordNotEnabledError,
    TokenInvalidError,
    UserNotFoundError,
)
from iamprovider.service.passwords import PasswordHasher
from iamprovider.service.tokens import TokenCodec
from iamprovider.storage.base import Store
from iamprovider.storage.models import User, UserPatch

logger = get_logger(__name__)

EMAIL_VERIFICATION = "email-verification"
PASSWORD_RESET = "password-reset"


def build_callback_url(callback_url: str, token: str) -> str:
    separator = "&" if "?" in callback_url else "?"
    return f"{callback_url}{separator}{urlencode({'token': token})}"


class PurposeTokenService:
    """Signed single-purpose tokens bound to a user id and email.

    A token minted for one purpose is rejected by every other purpose, and a
    token whose embedded email no longer matches the account is rejected so
    an email change invalidates outstanding links.
    """

    def __init__(
        self,
        codec: TokenCodec,
        store: Store,
        *,
        purpose: str,
        ttl_hours: int,
        call: Optional[BoundedCaller] = None,
    ) -> None:
        self.codec = codec
        self.store = store
        self.purpose = purpose
        self.ttl_hours = ttl_hours
        self._call = call or BoundedCaller(None)

    def issue(self, user: User) -> str:
        return self.codec.sign(
            {"sub": user.id, "email": user.email, "purpose": self.purpose},
            self.ttl_hours * 3600,
        )

    async def consume(self, token: str) -> User:
        claims = self.codec.verify(token)
        if claims.get("purpose") != self.purpose:
            raise TokenInvalidError("wrong purpose")
        subject = claims.get("sub")
        user = await self._call(self.store.find_user_by_id, subject) if subject else None
        if not user:
            raise UserNotFoundError()
        if user.email != claims.get("email"):
            raise TokenInvalidError("email changed")
        return user


class EmailVerificationService:
    def __init__(
        self,
        tokens: PurposeTokenService,
        store: Store,
        *,
        notifier: Optional[EmailNotifier] = None,
        call: Optional[BoundedCaller] = None,
    ) -> None:
        self.tokens = tokens
        self.store = store
        self.notifier = notifier
        self._call = call or BoundedCaller(None)

    def send_verification(self, user: User, callback_url: Optional[str] = None) -> Optional[str]:
        """Mint a verification link; email it only when a callback URL was given."""
        if not callback_url:
            return None
        url = build_callback_url(callback_url, self.tokens.issue(user))
        if self.notifier:
            self.notifier.send_verification(user.email, url, self.tokens.ttl_hours)
        logger.info("verification_email_queued", user_id=user.id)
        return url

    async def verify_email(self, token: str) -> User:
        user = await self.tokens.consume(token)
        if user.is_email_verified:
            return user
        updated = await self._call(
            self.store.update_user,
            user.id,
            UserPatch(is_email_verified=True, verification_deadline=None),
        )
        if not updated:
            raise UserNotFoundError()
        logger.info("email_verified", user_id=user.id)
        return updated

    async def resend(self, email: str, callback_url: Optional[str] = None) -> Optional[str]:
        user = await self._call(self.store.find_user_by_email, email.strip().lower())
        # Unknown and already-verified addresses look identical to the caller
        if not user or user.is_email_verified:
            return None
        return self.send_verification(user, callback_url)


class PasswordResetService:
    def __init__(
        self,
        tokens: PurposeTokenService,
        store: Store,
        hasher: PasswordHasher,
        *,
        notifier: Optional[EmailNotifier] = None,
        call: Optional[BoundedCaller] = None,
        hash_call: Optional[BoundedCaller] = None,
    ) -> None:
        self.tokens = tokens
        self.store = store
        self.hasher = hasher
        self.notifier = notifier
        self._call = call or BoundedCaller(None)
        self._hash_call = hash_call or BoundedCaller(None, label="hasher")

    async def request_reset(self, email: str, callback_url: Optional[str] = None) -> Optional[str]:
        user = await self._call(self.store.find_user_by_email, email.strip().lower())
        if not user:
            return None
        if not user.password_hash:
            raise PasswordNotEnabledError()
        if not user.is_active:
            return None
        if not callback_url:
            return None
        url = build_callback_url(callback_url, self.tokens.issue(user))
        if self.notifier:
            self.notifier.send_password_reset(user.email, url, self.tokens.ttl_hours)
        logger.info("password_reset_requested", user_id=user.id)
        return url

    async def reset_password(self, token: str, new_password: str) -> User:
        user = await self.tokens.consume(token)
        if not user.password_hash:
            raise PasswordNotEnabledError()
        password_hash = await self._hash_call(self.hasher.hash, new_password)
        updated = await self._call(
            self.store.update_user,
            user.id,
            UserPatch(password_hash=password_hash, failed_login_attempts=0, lockout_until=None),
        )
        if not updated:
            raise UserNotFoundError()
        logger.info("password_reset_completed", user_id=user.id)
        if self.notifier:
            self.notifier.password_changed(updated.email)
        return updated
