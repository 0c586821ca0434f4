from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from iamprovider.storage.models import (
    ExternalIdentity,
    PasskeyCredential,
    RefreshToken,
    User,
    UserPage,
    UserPatch,
    UserSearch,
)


class CredentialStore(Protocol):
    """Persistence contract for user records.

    Mutating helpers return the user as it is after the write, or ``None``
    when no user with the given id exists.
    """

    def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    def find_user_by_id(self, user_id: str) -> Optional[User]:
        ...

    def find_user_by_external_identity(
        self, provider: str, provider_id: str
    ) -> Optional[User]:
        ...

    def find_user_by_passkey_credential_id(self, credential_id: str) -> Optional[User]:
        ...

    def create_user(self, user: User) -> User:
        ...

    def update_user(self, user_id: str, patch: UserPatch) -> Optional[User]:
        ...

    def delete_user(self, user_id: str) -> bool:
        ...

    def add_external_identity(
        self, user_id: str, identity: ExternalIdentity
    ) -> Optional[User]:
        ...

    def remove_external_identity(
        self, user_id: str, provider: str, provider_id: str
    ) -> Optional[User]:
        ...

    def add_passkey(self, user_id: str, passkey: PasskeyCredential) -> Optional[User]:
        ...

    def update_passkey_counter(
        self, user_id: str, credential_id: str, counter: int
    ) -> Optional[User]:
        ...

    def remove_passkey(self, user_id: str, credential_id: str) -> Optional[User]:
        ...

    def increment_failed_login_attempts(self, user_id: str) -> Optional[User]:
        ...

    def reset_failed_login_attempts(self, user_id: str) -> Optional[User]:
        ...

    def set_lockout(self, user_id: str, until: datetime) -> Optional[User]:
        ...

    def update_last_login(self, user_id: str) -> Optional[User]:
        ...

    def search_users(self, query: UserSearch) -> UserPage:
        ...

    def purge_deleted_users(self, now: datetime) -> int:
        ...


class TokenLedger(Protocol):
    """Persistence contract for refresh-token records."""

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        ...

    def find_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        ...

    def find_active_refresh_tokens_by_user(self, user_id: str) -> List[RefreshToken]:
        ...

    def mark_refresh_token_used(self, token_hash: str) -> bool:
        """Flip ``is_used`` atomically; ``False`` means another caller won."""
        ...

    def revoke_refresh_tokens_by_family(self, family: str) -> int:
        ...

    def revoke_all_refresh_tokens_by_user(self, user_id: str) -> int:
        ...

    def revoke_other_refresh_tokens_by_user(self, user_id: str, keep_family: Optional[str]) -> int:
        """Revoke every session of the user except one family, in one operation."""
        ...

    def count_active_refresh_tokens_by_user(self, user_id: str) -> int:
        ...

    def purge_expired_refresh_tokens(self, before: datetime) -> int:
        ...


class Store(CredentialStore, TokenLedger, Protocol):
    """Both contracts backed by one database."""

    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...
