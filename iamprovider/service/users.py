from __future__ import annotations

from typing import Optional

from iamprovider.logging import get_logger
from iamprovider.service.auth import AuthService
from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.errors import DuplicateEmailError, UserNotFoundError, ValidationError
from iamprovider.service.passwords import PasswordHasher
from iamprovider.storage.base import Store
from iamprovider.storage.errors import ConstraintViolation
from iamprovider.storage.models import User, UserPage, UserPatch, UserSearch, new_id, utcnow

logger = get_logger(__name__)

SORTABLE_FIELDS = {"created_at", "email", "last_login_at"}
MAX_PAGE_SIZE = 100


class UserAdminService:
    """Administrative account management."""

    def __init__(
        self,
        store: Store,
        hasher: PasswordHasher,
        auth: AuthService,
        *,
        call: Optional[BoundedCaller] = None,
        hash_call: Optional[BoundedCaller] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.auth = auth
        self._call = call or BoundedCaller(None)
        self._hash_call = hash_call or BoundedCaller(None, label="hasher")

    async def _require(self, user_id: str) -> User:
        user = await self._call(self.store.find_user_by_id, user_id)
        if not user:
            raise UserNotFoundError()
        return user

    async def search(self, query: UserSearch) -> UserPage:
        if query.sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"cannot sort by {query.sort_by}")
        if query.sort_order not in {"asc", "desc"}:
            raise ValidationError("sort_order must be asc or desc")
        if not 1 <= query.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if query.skip < 0:
            raise ValidationError("skip must not be negative")
        return await self._call(self.store.search_users, query)

    async def create(
        self,
        email: str,
        *,
        password: Optional[str] = None,
        display_name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_admin: bool = False,
        is_email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        if await self._call(self.store.find_user_by_email, normalized):
            raise DuplicateEmailError()
        password_hash = None
        if password:
            password_hash = await self._hash_call(self.hasher.hash, password)
        now = utcnow()
        user = User(
            id=new_id(),
            email=normalized,
            password_hash=password_hash,
            is_admin=is_admin,
            is_email_verified=is_email_verified,
            display_name=display_name,
            first_name=first_name,
            last_name=last_name,
            created_at=now,
            updated_at=now,
        )
        try:
            created = await self._call(self.store.create_user, user)
        except ConstraintViolation:
            raise DuplicateEmailError()
        logger.info("admin_user_created", user_id=created.id, is_admin=is_admin)
        return created

    async def search_by_email(self, email: str) -> Optional[User]:
        return await self._call(self.store.find_user_by_email, email.strip().lower())

    async def get(self, user_id: str) -> User:
        return await self._require(user_id)

    async def update(self, user_id: str, patch: UserPatch) -> User:
        """Apply an admin edit; a privilege change ends the user's sessions."""
        current = await self._require(user_id)
        if patch.is_empty():
            return current
        try:
            updated = await self._call(self.store.update_user, user_id, patch)
        except ConstraintViolation:
            raise DuplicateEmailError()
        if not updated:
            raise UserNotFoundError()
        if updated.is_admin != current.is_admin:
            revoked = await self._call(self.store.revoke_all_refresh_tokens_by_user, user_id)
            logger.info(
                "user_role_updated_sessions_revoked",
                user_id=user_id,
                is_admin=updated.is_admin,
                revoked=revoked,
            )
        return updated

    async def delete(self, user_id: str) -> None:
        if not await self._call(self.store.delete_user, user_id):
            raise UserNotFoundError()
        logger.info("admin_user_deleted", user_id=user_id)

    async def verify_email(self, user_id: str) -> User:
        await self._require(user_id)
        updated = await self._call(
            self.store.update_user,
            user_id,
            UserPatch(is_email_verified=True, verification_deadline=None),
        )
        if not updated:
            raise UserNotFoundError()
        return updated

    async def deactivate(self, user_id: str) -> User:
        user = await self._require(user_id)
        return await self.auth.soft_delete(user)

    async def reactivate(self, user_id: str) -> User:
        await self._require(user_id)
        updated = await self._call(
            self.store.update_user,
            user_id,
            UserPatch(
                is_active=True,
                inactive_at=None,
                deletion_deadline=None,
                failed_login_attempts=0,
                lockout_until=None,
            ),
        )
        if not updated:
            raise UserNotFoundError()
        logger.info("admin_user_reactivated", user_id=user_id)
        return updated
