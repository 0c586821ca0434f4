"""Tests for email verification, password reset and the email notifier."""

from urllib.parse import parse_qs, urlparse

import pytest

from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.email import EmailNotifier, EmailService
from iamprovider.service.errors import (
    PasswordNotEnabledError,
    TokenExpiredError,
    TokenInvalidError,
    UserNotFoundError,
)
from iamprovider.service.verification import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    EmailVerificationService,
    PasswordResetService,
    PurposeTokenService,
    build_callback_url,
)
from iamprovider.storage.models import User, UserPatch

PASSWORD = "Str0ng#Passw0rd"
CALLBACK = "https://app.example.com/verify"


class RecordingTransport:
    """Stand-in SMTP transport capturing every message."""

    timeout_seconds = 5

    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send_text(self, to_email, subject, text_body):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append((to_email, subject, text_body))
        return True


def _token_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def notifier(transport):
    return EmailNotifier(transport)


@pytest.fixture
def verification(codec, memory_store, notifier):
    tokens = PurposeTokenService(codec, memory_store, purpose=EMAIL_VERIFICATION, ttl_hours=24)
    return EmailVerificationService(tokens, memory_store, notifier=notifier, call=BoundedCaller(None))


@pytest.fixture
def reset(codec, memory_store, hasher, notifier):
    tokens = PurposeTokenService(codec, memory_store, purpose=PASSWORD_RESET, ttl_hours=1)
    return PasswordResetService(tokens, memory_store, hasher, notifier=notifier)


@pytest.fixture
def user(memory_store, hasher):
    return memory_store.create_user(
        User(id="u1", email="person@example.com", password_hash=hasher.hash(PASSWORD))
    )


class TestCallbackUrl:
    def test_appends_query_parameter(self):
        assert build_callback_url("https://x.test/cb", "abc") == "https://x.test/cb?token=abc"

    def test_preserves_existing_query(self):
        assert build_callback_url("https://x.test/cb?a=1", "abc") == "https://x.test/cb?a=1&token=abc"


class TestEmailVerification:
    async def test_send_and_verify(self, verification, memory_store, user, notifier, transport):
        """The emailed link verifies the account."""
        url = verification.send_verification(user, CALLBACK)
        await notifier.drain()

        assert url.startswith(CALLBACK + "?token=")
        assert transport.sent[0][0] == user.email
        assert url in transport.sent[0][2]
        assert "24 hours" in transport.sent[0][2]

        verified = await verification.verify_email(_token_from(url))
        assert verified.is_email_verified is True
        assert memory_store.find_user_by_id(user.id).verification_deadline is None

    async def test_no_callback_means_no_email(self, verification, user, notifier, transport):
        assert verification.send_verification(user, None) is None
        await notifier.drain()
        assert transport.sent == []

    async def test_email_change_invalidates_link(self, verification, memory_store, user):
        """A token minted for the old address is rejected after the email changes."""
        url = verification.send_verification(user, CALLBACK)
        memory_store.update_user(user.id, UserPatch(email="renamed@example.com"))

        with pytest.raises(TokenInvalidError) as exc_info:
            await verification.verify_email(_token_from(url))
        assert exc_info.value.reason == "email changed"

    async def test_reset_token_cannot_verify_email(self, verification, reset, user):
        url = await reset.request_reset(user.email, CALLBACK)
        with pytest.raises(TokenInvalidError) as exc_info:
            await verification.verify_email(_token_from(url))
        assert exc_info.value.reason == "wrong purpose"

    async def test_deleted_user(self, verification, memory_store, user):
        url = verification.send_verification(user, CALLBACK)
        memory_store.delete_user(user.id)
        with pytest.raises(UserNotFoundError):
            await verification.verify_email(_token_from(url))

    async def test_expired_link(self, codec, memory_store, user):
        tokens = PurposeTokenService(codec, memory_store, purpose=EMAIL_VERIFICATION, ttl_hours=0)
        service = EmailVerificationService(tokens, memory_store)
        url = service.send_verification(user, CALLBACK)
        with pytest.raises(TokenExpiredError):
            await service.verify_email(_token_from(url))

    async def test_resend_is_silent_for_unknown_and_verified(
        self, verification, memory_store, user
    ):
        assert await verification.resend("nobody@example.com", CALLBACK) is None
        memory_store.update_user(user.id, UserPatch(is_email_verified=True))
        assert await verification.resend(user.email, CALLBACK) is None

    async def test_resend_for_unverified(self, verification, user):
        assert await verification.resend(user.email.upper(), CALLBACK) is not None


class TestPasswordReset:
    async def test_reset_replaces_password_and_clears_lockout(
        self, reset, memory_store, hasher, user, notifier, transport
    ):
        memory_store.increment_failed_login_attempts(user.id)
        url = await reset.request_reset(user.email, CALLBACK)

        updated = await reset.reset_password(_token_from(url), "N3w#Password")
        await notifier.drain()

        assert hasher.verify("N3w#Password", updated.password_hash)
        assert updated.failed_login_attempts == 0
        subjects = [subject for _, subject, _ in transport.sent]
        assert subjects == ["Reset your password", "Your password was changed"]

    async def test_unknown_email_is_silent(self, reset):
        assert await reset.request_reset("nobody@example.com", CALLBACK) is None

    async def test_passwordless_account_is_reported(self, reset, memory_store):
        memory_store.create_user(User(id="u2", email="oauth@example.com"))
        with pytest.raises(PasswordNotEnabledError):
            await reset.request_reset("oauth@example.com", CALLBACK)

    async def test_inactive_account_is_silent(self, reset, memory_store, user):
        memory_store.update_user(user.id, UserPatch(is_active=False))
        assert await reset.request_reset(user.email, CALLBACK) is None

    async def test_verification_token_cannot_reset(self, reset, verification, user):
        url = verification.send_verification(user, CALLBACK)
        with pytest.raises(TokenInvalidError):
            await reset.reset_password(_token_from(url), "N3w#Password")


class TestEmailNotifier:
    async def test_failures_are_logged_not_raised(self):
        notifier = EmailNotifier(RecordingTransport(fail=True))
        notifier.password_changed("someone@example.com")
        assert notifier.pending == 1
        await notifier.drain()
        assert notifier.pending == 0

    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService(smtp_host=None)
        assert service.is_configured is False
        assert service.send_text("someone@example.com", "hello", "body") is True

    async def test_deactivation_notice_points_to_reactivation(self):
        transport = RecordingTransport()
        notifier = EmailNotifier(transport)
        notifier.account_deactivated("someone@example.com", None)
        await notifier.drain()

        (_, subject, body), = transport.sent
        assert subject == "Your account has been deactivated"
        assert "reactivation page" in body
        assert "signing in" not in body
