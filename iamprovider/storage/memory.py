from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from iamprovider.logging import get_logger
from iamprovider.storage.errors import ConstraintViolation
from iamprovider.storage.models import (
    ExternalIdentity,
    PasskeyCredential,
    RefreshToken,
    User,
    UserPage,
    UserPatch,
    UserSearch,
    utcnow,
)


class MemoryStore:
    """In-process credential store and token ledger.

    Used in tests and single-instance development. Every read and write runs
    under one re-entrant lock, which is what makes ``mark_refresh_token_used``
    a compare-and-set. Returned objects are copies; callers never hold
    references into the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()

    @staticmethod
    def _snapshot(user: Optional[User]) -> Optional[User]:
        return copy.deepcopy(user) if user is not None else None

    def _touch(self, user: User) -> None:
        user.updated_at = utcnow()

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # users
    def find_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return self._snapshot(
                next((u for u in self.users.values() if u.email == normalized), None)
            )

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._snapshot(self.users.get(user_id))

    def find_user_by_external_identity(
        self, provider: str, provider_id: str
    ) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                for identity in user.external_identities:
                    if identity.provider == provider and identity.provider_id == provider_id:
                        return self._snapshot(user)
            return None

    def find_user_by_passkey_credential_id(self, credential_id: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.find_passkey(credential_id) is not None:
                    return self._snapshot(user)
            return None

    def create_user(self, user: User) -> User:
        stored = replace(user, email=user.email.strip().lower())
        with self._data_lock:
            if any(existing.email == stored.email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            for identity in stored.external_identities:
                if self._identity_owner(identity.provider, identity.provider_id):
                    raise ConstraintViolation(
                        "external identity already linked", {"field": "external_identities"}
                    )
            self.users[stored.id] = copy.deepcopy(stored)
            return self._snapshot(stored)

    def update_user(self, user_id: str, patch: UserPatch) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            changes = patch.changes()
            new_email = changes.get("email")
            if new_email:
                normalized = new_email.strip().lower()
                if any(
                    other.email == normalized and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            updated = patch.apply(user)
            self.users[user_id] = updated
            return self._snapshot(updated)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed is None:
                return False
            self._drop_tokens_for(user_id)
            return True

    def _identity_owner(self, provider: str, provider_id: str) -> Optional[str]:
        for user in self.users.values():
            for identity in user.external_identities:
                if identity.provider == provider and identity.provider_id == provider_id:
                    return user.id
        return None

    def add_external_identity(
        self, user_id: str, identity: ExternalIdentity
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            owner = self._identity_owner(identity.provider, identity.provider_id)
            if owner == user_id:
                return self._snapshot(user)
            if owner is not None:
                raise ConstraintViolation(
                    "external identity already linked", {"field": "external_identities"}
                )
            user.external_identities.append(copy.deepcopy(identity))
            self._touch(user)
            return self._snapshot(user)

    def remove_external_identity(
        self, user_id: str, provider: str, provider_id: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.external_identities = [
                identity
                for identity in user.external_identities
                if not (identity.provider == provider and identity.provider_id == provider_id)
            ]
            self._touch(user)
            return self._snapshot(user)

    def add_passkey(self, user_id: str, passkey: PasskeyCredential) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if self.find_user_by_passkey_credential_id(passkey.credential_id):
                raise ConstraintViolation(
                    "passkey already registered", {"field": "credential_id"}
                )
            user.passkeys.append(copy.deepcopy(passkey))
            self._touch(user)
            return self._snapshot(user)

    def update_passkey_counter(
        self, user_id: str, credential_id: str, counter: int
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            passkey = user.find_passkey(credential_id)
            if passkey is None:
                return None
            now = utcnow()
            passkey.counter = counter
            passkey.last_used_at = now
            user.updated_at = now
            return self._snapshot(user)

    def remove_passkey(self, user_id: str, credential_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.passkeys = [p for p in user.passkeys if p.credential_id != credential_id]
            self._touch(user)
            return self._snapshot(user)

    def increment_failed_login_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            self._touch(user)
            return self._snapshot(user)

    def reset_failed_login_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            user.lockout_until = None
            self._touch(user)
            return self._snapshot(user)

    def set_lockout(self, user_id: str, until: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.lockout_until = until
            self._touch(user)
            return self._snapshot(user)

    def update_last_login(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login_at = utcnow()
            self._touch(user)
            return self._snapshot(user)

    def search_users(self, query: UserSearch) -> UserPage:
        with self._data_lock:
            matches = list(self.users.values())
            if query.email:
                needle = query.email.strip().lower()
                matches = [u for u in matches if needle in u.email]
            if query.is_active is not None:
                matches = [u for u in matches if u.is_active == query.is_active]
            if query.is_email_verified is not None:
                matches = [
                    u for u in matches if u.is_email_verified == query.is_email_verified
                ]
            reverse = query.sort_order == "desc"
            if query.sort_by == "last_login_at":
                # Never-logged-in users sort last in either direction
                logged_in = [u for u in matches if u.last_login_at is not None]
                never = [u for u in matches if u.last_login_at is None]
                logged_in.sort(key=lambda u: u.last_login_at, reverse=reverse)
                matches = logged_in + never
            else:
                matches.sort(key=lambda u: getattr(u, query.sort_by), reverse=reverse)
            page = matches[query.skip : query.skip + query.limit]
            return UserPage(
                users=[copy.deepcopy(u) for u in page],
                total=len(matches),
                limit=query.limit,
                skip=query.skip,
            )

    def purge_deleted_users(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                user.id
                for user in self.users.values()
                if not user.is_active
                and user.deletion_deadline is not None
                and user.deletion_deadline <= now
            ]
            for user_id in doomed:
                self.users.pop(user_id, None)
                self._drop_tokens_for(user_id)
            return len(doomed)

    # refresh tokens
    def _drop_tokens_for(self, user_id: str) -> None:
        stale = [h for h, tok in self.refresh_tokens.items() if tok.user_id == user_id]
        for token_hash in stale:
            self.refresh_tokens.pop(token_hash, None)

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "token_hash"}
                )
            self.refresh_tokens[token.token_hash] = copy.deepcopy(token)
            return copy.deepcopy(token)

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            return copy.deepcopy(token) if token else None

    def find_active_refresh_tokens_by_user(self, user_id: str) -> List[RefreshToken]:
        now = utcnow()
        with self._data_lock:
            active = [
                copy.deepcopy(tok)
                for tok in self.refresh_tokens.values()
                if tok.user_id == user_id and tok.is_usable(now)
            ]
        return sorted(active, key=lambda tok: tok.created_at, reverse=True)

    def mark_refresh_token_used(self, token_hash: str) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if token is None or token.is_used:
                return False
            token.is_used = True
            token.updated_at = utcnow()
            return True

    def _revoke_where(self, predicate) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if not token.is_revoked and predicate(token):
                    token.is_revoked = True
                    token.updated_at = now
                    count += 1
        return count

    def revoke_refresh_tokens_by_family(self, family: str) -> int:
        return self._revoke_where(lambda tok: tok.family == family)

    def revoke_all_refresh_tokens_by_user(self, user_id: str) -> int:
        return self._revoke_where(lambda tok: tok.user_id == user_id)

    def revoke_other_refresh_tokens_by_user(self, user_id: str, keep_family: Optional[str]) -> int:
        return self._revoke_where(
            lambda tok: tok.user_id == user_id and tok.family != keep_family
        )

    def count_active_refresh_tokens_by_user(self, user_id: str) -> int:
        now = utcnow()
        with self._data_lock:
            return sum(
                1
                for tok in self.refresh_tokens.values()
                if tok.user_id == user_id and tok.is_usable(now)
            )

    def purge_expired_refresh_tokens(self, before: datetime) -> int:
        with self._data_lock:
            expired = [h for h, tok in self.refresh_tokens.items() if tok.expires_at <= before]
            for token_hash in expired:
                self.refresh_tokens.pop(token_hash, None)
            if expired:
                self.logger.debug("refresh_tokens_purged", count=len(expired))
            return len(expired)
