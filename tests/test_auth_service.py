"""Unit tests for the auth service.

Tests for:
- Registration and duplicate email handling
- Login preconditions, in their fixed order
- Lockout after repeated failures
- Refresh rotation and reuse detection
- Session listing and revocation
- Deactivation, reactivation and password changes
"""

import base64
from datetime import datetime, timedelta, timezone

import pytest

from iamprovider.service.errors import (
    AccountLockedError,
    AccountPendingDeletionError,
    DuplicateEmailError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    NotFoundError,
    PasswordAlreadySetError,
    PasswordNotEnabledError,
    TokenExpiredError,
    TokenInvalidError,
)
from iamprovider.service.auth import is_account_locked
from iamprovider.service.passwords import PasswordHasher
from iamprovider.service.tokens import hash_token
from iamprovider.storage.models import User, UserPatch

PASSWORD = "Str0ng#Passw0rd"


def _now():
    return datetime.now(timezone.utc)


def _segment(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


async def _verified_user(auth_service, memory_store, email="user@example.com"):
    result = await auth_service.register(email, PASSWORD)
    memory_store.update_user(result.user.id, UserPatch(is_email_verified=True))
    return memory_store.find_user_by_id(result.user.id)


class TestRegistration:
    async def test_register_returns_tokens_for_unverified_user(self, auth_service):
        """Registration opens a session even though the email is unverified."""
        result = await auth_service.register("New@Example.com", PASSWORD)

        assert result.user.email == "new@example.com"
        assert result.user.is_email_verified is False
        assert result.user.verification_deadline is not None
        assert result.user.password_hash != PASSWORD
        assert result.expires_in == 900
        assert result.refresh_token

    async def test_duplicate_email_rejected_case_insensitively(self, auth_service):
        await auth_service.register("dup@example.com", PASSWORD)
        with pytest.raises(DuplicateEmailError):
            await auth_service.register("DUP@example.com", PASSWORD)


class TestLoginPreconditions:
    """Each precondition in isolation."""

    async def test_unknown_email_is_invalid_credentials(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("ghost@example.com", PASSWORD)

    async def test_passwordless_account_is_invalid_credentials(self, auth_service, memory_store):
        """An OAuth-only account never accepts a password."""
        memory_store.create_user(User(id="u1", email="oauth@example.com", is_email_verified=True))
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("oauth@example.com", PASSWORD)

    async def test_pending_deletion_reports_deadline(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        deadline = _now() + timedelta(days=10)
        memory_store.update_user(
            user.id, UserPatch(is_active=False, inactive_at=_now(), deletion_deadline=deadline)
        )

        with pytest.raises(AccountPendingDeletionError) as exc_info:
            await auth_service.login(user.email, PASSWORD)
        assert exc_info.value.deletion_date == deadline
        assert exc_info.value.status_code == 403

    async def test_pending_deletion_checked_before_password(self, auth_service, memory_store):
        """A wrong password on a pending-deletion account still reports the deletion."""
        user = await _verified_user(auth_service, memory_store)
        memory_store.update_user(
            user.id,
            UserPatch(is_active=False, deletion_deadline=_now() + timedelta(days=1)),
        )
        with pytest.raises(AccountPendingDeletionError):
            await auth_service.login(user.email, "Wr0ng#Password")

    async def test_inactive_without_deadline_is_invalid_credentials(
        self, auth_service, memory_store
    ):
        user = await _verified_user(auth_service, memory_store)
        memory_store.update_user(user.id, UserPatch(is_active=False))
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(user.email, PASSWORD)

    async def test_locked_account_rejected_even_with_correct_password(
        self, auth_service, memory_store
    ):
        user = await _verified_user(auth_service, memory_store)
        until = _now() + timedelta(minutes=5)
        memory_store.set_lockout(user.id, until)

        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login(user.email, PASSWORD)
        assert exc_info.value.lockout_until == until
        assert exc_info.value.status_code == 423

    async def test_expired_lockout_allows_login(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        memory_store.set_lockout(user.id, _now() - timedelta(seconds=1))
        result = await auth_service.login(user.email, PASSWORD)
        assert result.user.id == user.id

    async def test_wrong_password_increments_counter(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(user.email, "Wr0ng#Password")
        assert memory_store.find_user_by_id(user.id).failed_login_attempts == 1

    async def test_unverified_email_checked_after_password(self, auth_service, memory_store):
        """The right password on an unverified account yields EmailNotVerified."""
        await auth_service.register("pending@example.com", PASSWORD)
        with pytest.raises(EmailNotVerifiedError):
            await auth_service.login("pending@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("pending@example.com", "Wr0ng#Password")

    async def test_success_resets_counter_and_records_login(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        memory_store.increment_failed_login_attempts(user.id)

        result = await auth_service.login(user.email.upper(), PASSWORD)

        stored = memory_store.find_user_by_id(user.id)
        assert stored.failed_login_attempts == 0
        assert stored.lockout_until is None
        assert stored.last_login_at is not None
        assert result.user.last_login_at is not None


class TestLockout:
    async def test_fifth_failure_locks_for_fifteen_minutes(self, auth_service, memory_store):
        """Four failures are InvalidCredentials; the fifth locks the account."""
        user = await _verified_user(auth_service, memory_store)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.login(user.email, "Wr0ng#Password")

        before = _now()
        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login(user.email, "Wr0ng#Password")

        lockout = exc_info.value.lockout_until
        assert timedelta(minutes=14) < lockout - before <= timedelta(minutes=15, seconds=5)
        with pytest.raises(AccountLockedError):
            await auth_service.login(user.email, PASSWORD)


class TestRefresh:
    async def test_rotation_returns_distinct_token(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        first = await auth_service.login(user.email, PASSWORD)

        rotated = await auth_service.refresh_tokens(first.refresh_token)

        assert rotated.refresh_token != first.refresh_token
        assert rotated.record.family == memory_store.find_refresh_token_by_hash(
            hash_token(first.refresh_token)
        ).family
        assert memory_store.find_refresh_token_by_hash(hash_token(first.refresh_token)).is_used

    async def test_reuse_revokes_the_whole_family(self, auth_service, memory_store):
        """Presenting a rotated token kills every token of that family."""
        user = await _verified_user(auth_service, memory_store)
        first = await auth_service.login(user.email, PASSWORD)
        rotated = await auth_service.refresh_tokens(first.refresh_token)

        with pytest.raises(TokenInvalidError) as exc_info:
            await auth_service.refresh_tokens(first.refresh_token)
        assert exc_info.value.reason == "reuse detected"

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh_tokens(rotated.refresh_token)
        assert memory_store.count_active_refresh_tokens_by_user(user.id) == 0

    async def test_unknown_token_is_invalid(self, auth_service):
        with pytest.raises(TokenInvalidError):
            await auth_service.refresh_tokens("not-a-token")

    async def test_expired_token(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        result = await auth_service.login(user.email, PASSWORD)
        stored = memory_store.refresh_tokens[hash_token(result.refresh_token)]
        stored.expires_at = _now() - timedelta(seconds=1)

        with pytest.raises(TokenExpiredError):
            await auth_service.refresh_tokens(result.refresh_token)

    async def test_inactive_user_cannot_refresh(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        result = await auth_service.login(user.email, PASSWORD)
        memory_store.update_user(user.id, UserPatch(is_active=False))

        with pytest.raises(TokenInvalidError):
            await auth_service.refresh_tokens(result.refresh_token)

    async def test_repeated_logins_leave_one_session(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        for _ in range(3):
            last = await auth_service.login(user.email, PASSWORD)

        sessions = await auth_service.list_sessions(user.id, last.refresh_token)
        assert len(sessions) == 1
        assert sessions[0].is_current is True


class TestSessions:
    async def test_logout_revokes_family_and_ignores_unknown(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        result = await auth_service.login(user.email, PASSWORD)

        await auth_service.logout(result.refresh_token)
        await auth_service.logout("unknown")

        assert memory_store.count_active_refresh_tokens_by_user(user.id) == 0

    async def test_logout_all_counts_revoked(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        await auth_service.login(user.email, PASSWORD)
        assert await auth_service.logout_all(user.id) >= 1
        assert await auth_service.list_sessions(user.id) == []

    async def test_revoke_session_of_another_user_is_not_found(
        self, auth_service, memory_store
    ):
        owner = await _verified_user(auth_service, memory_store, "owner@example.com")
        other = await _verified_user(auth_service, memory_store, "other@example.com")
        await auth_service.login(owner.email, PASSWORD)
        session = (await auth_service.list_sessions(owner.id))[0]

        with pytest.raises(NotFoundError):
            await auth_service.revoke_session(other.id, session.id)
        assert await auth_service.revoke_session(owner.id, session.id) == 1


class TestAccessTokens:
    async def test_authenticate_resolves_user(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        result = await auth_service.login(user.email, PASSWORD)
        assert (await auth_service.authenticate(result.access_token)).id == user.id

    async def test_purpose_tokens_are_not_access_tokens(self, auth_service, codec):
        token = codec.sign({"sub": "u1", "email": "a@example.com", "purpose": "password-reset"}, 60)
        with pytest.raises(TokenInvalidError):
            auth_service.verify_access_token(token)

    async def test_introspect_active_and_inactive(self, auth_service, memory_store, codec):
        user = await _verified_user(auth_service, memory_store)
        result = await auth_service.login(user.email, PASSWORD)

        body = auth_service.introspect(result.access_token)
        assert body["active"] is True
        assert body["sub"] == user.id
        assert body["isAdmin"] is False
        assert set(body) == {"active", "sub", "email", "isAdmin", "iat", "exp"}

        assert auth_service.introspect("garbage") == {"active": False}
        assert auth_service.introspect(codec.sign({"sub": user.id}, -5)) == {"active": False}

    async def test_forged_non_ascii_signature_is_inactive(self, auth_service):
        """A signature segment outside ASCII is rejected, never raised as a crash."""
        header = _segment('{"alg":"HS256"}')
        payload = _segment('{"sub":"x"}')
        forged = header + "." + payload + ".\u00e9"

        assert auth_service.introspect(forged) == {"active": False}
        with pytest.raises(TokenInvalidError):
            await auth_service.authenticate(forged)


class TestAccountLifecycle:
    async def test_deactivate_then_reactivate(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        await auth_service.login(user.email, PASSWORD)

        deactivated = await auth_service.deactivate(user.id, PASSWORD)
        assert deactivated.is_active is False
        assert deactivated.deletion_deadline > _now() + timedelta(days=29)
        assert memory_store.count_active_refresh_tokens_by_user(user.id) == 0

        result = await auth_service.reactivate(user.email, PASSWORD)
        assert result.user.is_active is True
        assert result.user.deletion_deadline is None

    async def test_deactivate_requires_password(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.deactivate(user.id, "Wr0ng#Password")

    async def test_reactivate_active_account_rejected(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.reactivate(user.email, PASSWORD)

    async def test_set_password_only_once(self, auth_service, memory_store):
        memory_store.create_user(User(id="u1", email="oauth@example.com"))
        updated = await auth_service.set_password("u1", PASSWORD)
        assert updated.has_password
        with pytest.raises(PasswordAlreadySetError):
            await auth_service.set_password("u1", PASSWORD)

    async def test_change_password_keeps_current_session_only(
        self, auth_service, memory_store, issuer
    ):
        user = await _verified_user(auth_service, memory_store)
        kept = await auth_service.login(user.email, PASSWORD)
        other = await issuer.issue_pair(user, family="other-device")

        await auth_service.change_password(
            user.id, PASSWORD, "N3w#Password", keep_refresh_token=kept.refresh_token
        )

        assert memory_store.find_refresh_token_by_hash(hash_token(kept.refresh_token)).is_usable()
        assert memory_store.find_refresh_token_by_hash(hash_token(other.refresh_token)).is_revoked
        await auth_service.login(user.email, "N3w#Password")

    async def test_change_password_without_password(self, auth_service, memory_store):
        memory_store.create_user(User(id="u1", email="oauth@example.com"))
        with pytest.raises(PasswordNotEnabledError):
            await auth_service.change_password("u1", PASSWORD, "N3w#Password")


class TestCredentiallessLogins:
    """Passkey and OAuth logins pass the same account gates as passwords."""

    @pytest.mark.parametrize("method", ["login_with_passkey", "login_with_external_identity"])
    async def test_locked_account_is_refused(self, auth_service, memory_store, method):
        user = await _verified_user(auth_service, memory_store)
        memory_store.set_lockout(user.id, _now() + timedelta(minutes=15))

        with pytest.raises(AccountLockedError):
            await getattr(auth_service, method)(user)
        assert memory_store.count_active_refresh_tokens_by_user(user.id) == 1

    @pytest.mark.parametrize("method", ["login_with_passkey", "login_with_external_identity"])
    async def test_pending_deletion_is_refused(self, auth_service, memory_store, method):
        user = await _verified_user(auth_service, memory_store)
        await auth_service.deactivate(user.id, PASSWORD)

        with pytest.raises(AccountPendingDeletionError):
            await getattr(auth_service, method)(user)
        assert memory_store.count_active_refresh_tokens_by_user(user.id) == 0

    async def test_unlocked_account_signs_in(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        memory_store.set_lockout(user.id, _now() - timedelta(seconds=1))

        result = await auth_service.login_with_passkey(user)
        assert result.user.id == user.id


class TestConcurrentRefresh:
    async def test_losing_the_conditional_update_revokes_the_family(
        self, auth_service, memory_store, monkeypatch
    ):
        """A token that still looks fresh but loses the compare-and-set counts as reuse."""
        user = await _verified_user(auth_service, memory_store)
        result = await auth_service.login(user.email, PASSWORD)
        monkeypatch.setattr(memory_store, "mark_refresh_token_used", lambda token_hash: False)

        with pytest.raises(TokenInvalidError) as exc_info:
            await auth_service.refresh_tokens(result.refresh_token)

        assert exc_info.value.reason == "reuse detected"
        assert memory_store.count_active_refresh_tokens_by_user(user.id) == 0


class TestAccountLockedCheck:
    def test_future_lockout_is_locked(self):
        now = _now()
        user = User(id="u1", email="a@example.com", lockout_until=now + timedelta(minutes=1))
        assert is_account_locked(user, now) is True

    def test_expired_or_missing_lockout_is_not_locked(self):
        now = _now()
        assert is_account_locked(User(id="u1", email="a@example.com"), now) is False
        expired = User(id="u2", email="b@example.com", lockout_until=now - timedelta(seconds=1))
        assert is_account_locked(expired, now) is False


class TestHashUpgrade:
    async def test_login_rehashes_outdated_parameters(self, auth_service, memory_store, hasher):
        old_hasher = PasswordHasher(time_cost=2, memory_cost=1024, parallelism=1)
        memory_store.create_user(
            User(
                id="u1",
                email="legacy@example.com",
                password_hash=old_hasher.hash(PASSWORD),
                is_email_verified=True,
            )
        )
        assert hasher.needs_rehash(memory_store.find_user_by_id("u1").password_hash)

        await auth_service.login("legacy@example.com", PASSWORD)

        upgraded = memory_store.find_user_by_id("u1").password_hash
        assert hasher.needs_rehash(upgraded) is False
        assert hasher.verify(PASSWORD, upgraded)

    async def test_current_hash_is_left_alone(self, auth_service, memory_store):
        user = await _verified_user(auth_service, memory_store)
        await auth_service.login(user.email, PASSWORD)
        assert memory_store.find_user_by_id(user.id).password_hash == user.password_hash
