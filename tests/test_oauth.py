"""Tests for OAuth state handling, code exchange and account resolution."""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from iamprovider.service.errors import (
    AuthenticationError,
    CannotUnlinkOnlyAuthMethodError,
    NotFoundError,
    OAuthAlreadyLinkedError,
    ValidationError,
)
from iamprovider.service.oauth import OAuthProfile, OAuthService
from iamprovider.storage.models import User


@pytest.fixture
def oauth(memory_store, settings):
    return OAuthService(memory_store, settings)


def _github_transport(emails=None, userinfo=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"access_token": "gh-token"})
        if request.url.path == "/user":
            assert request.headers["Authorization"] == "Bearer gh-token"
            return httpx.Response(200, json=userinfo or {"id": 42, "login": "octo"})
        if request.url.path == "/user/emails":
            return httpx.Response(200, json=emails or [])
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class TestState:
    async def test_start_builds_authorize_url(self, oauth):
        start = await oauth.start("google")
        query = parse_qs(urlparse(start["authorization_url"]).query)

        assert start["provider"] == "google"
        assert query["state"] == [start["state"]]
        assert query["client_id"] == ["google-client"]
        assert query["response_type"] == ["code"]

    async def test_state_is_single_use_and_provider_bound(self, oauth):
        start = await oauth.start("github")
        with pytest.raises(AuthenticationError):
            await oauth.consume_state("google", start["state"])
        # The failed attempt burned it
        with pytest.raises(AuthenticationError):
            await oauth.consume_state("github", start["state"])

    async def test_link_state_carries_user(self, oauth):
        start = await oauth.start("google", link_user_id="u1")
        assert await oauth.consume_state("google", start["state"]) == "u1"

    async def test_unknown_provider(self, oauth):
        with pytest.raises(NotFoundError):
            await oauth.start("myspace")

    async def test_unconfigured_provider(self, memory_store, settings):
        service = OAuthService(
            memory_store, settings.model_copy(update={"oauth_google_client_id": None})
        )
        with pytest.raises(ValidationError):
            await service.start("google")


class TestCodeExchange:
    async def test_github_private_email_lookup(self, memory_store, settings):
        """GitHub hides private emails from /user; the primary verified one is used."""
        service = OAuthService(
            memory_store,
            settings,
            transport=_github_transport(
                emails=[
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "octo@example.com", "primary": True, "verified": True},
                ]
            ),
        )
        profile = await service.exchange_code("github", "code-1")

        assert profile.provider_id == "42"
        assert profile.email == "octo@example.com"
        assert profile.display_name == "octo"

    async def test_missing_email_fails(self, memory_store, settings):
        service = OAuthService(memory_store, settings, transport=_github_transport())
        with pytest.raises(AuthenticationError):
            await service.exchange_code("github", "code-1")

    async def test_provider_error_fails(self, memory_store, settings):
        service = OAuthService(
            memory_store,
            settings,
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        with pytest.raises(AuthenticationError):
            await service.exchange_code("google", "code-1")

    async def test_registered_code_skips_network(self, oauth):
        profile = OAuthProfile("google", "g-1", "someone@example.com")
        oauth.register_oauth_code("google", "abc", profile)
        assert await oauth.exchange_code("google", "abc") is profile


class TestResolveUser:
    async def test_existing_link_wins(self, oauth, memory_store):
        profile = OAuthProfile("google", "g-1", "linked@example.com")
        created = await oauth.resolve_user(profile)

        again = await oauth.resolve_user(OAuthProfile("google", "g-1", "changed@example.com"))
        assert again.id == created.id

    async def test_matching_email_is_auto_linked(self, oauth, memory_store):
        memory_store.create_user(User(id="u1", email="match@example.com", password_hash="x"))

        user = await oauth.resolve_user(OAuthProfile("github", "gh-1", "Match@Example.com"))

        assert user.id == "u1"
        assert [(i.provider, i.provider_id) for i in user.external_identities] == [
            ("github", "gh-1")
        ]

    @pytest.mark.parametrize(
        "state",
        [
            {"is_active": False, "deletion_deadline": "future"},
            {"lockout_until": "future"},
        ],
    )
    async def test_refused_account_is_not_auto_linked(self, oauth, memory_store, state):
        future = datetime.now(timezone.utc) + timedelta(days=1)
        fields = {key: future if value == "future" else value for key, value in state.items()}
        memory_store.create_user(User(id="u1", email="held@example.com", **fields))

        user = await oauth.resolve_user(OAuthProfile("github", "gh-1", "held@example.com"))

        assert user.id == "u1"
        assert memory_store.find_user_by_id("u1").external_identities == []

    async def test_new_account_is_verified_and_passwordless(self, oauth):
        user = await oauth.resolve_user(
            OAuthProfile("google", "g-9", "fresh@example.com", "Fresh", "https://img/x.png")
        )
        assert user.is_email_verified is True
        assert user.has_password is False
        assert user.avatar_url == "https://img/x.png"


class TestLinking:
    async def test_link_taken_identity(self, oauth, memory_store):
        await oauth.resolve_user(OAuthProfile("google", "g-1", "first@example.com"))
        memory_store.create_user(User(id="u2", email="second@example.com"))
        with pytest.raises(OAuthAlreadyLinkedError):
            await oauth.link("u2", OAuthProfile("google", "g-1", "first@example.com"))

    async def test_unlink_only_method_fails(self, oauth):
        user = await oauth.resolve_user(OAuthProfile("google", "g-1", "only@example.com"))
        with pytest.raises(CannotUnlinkOnlyAuthMethodError):
            await oauth.unlink(user.id, "google", "g-1")

    async def test_unlink_with_password_succeeds(self, oauth, memory_store):
        memory_store.create_user(User(id="u1", email="pw@example.com", password_hash="hash"))
        await oauth.link("u1", OAuthProfile("google", "g-1", "pw@example.com"))

        updated = await oauth.unlink("u1", "google", "g-1")
        assert updated.external_identities == []

    async def test_unlink_with_second_identity_succeeds(self, oauth):
        user = await oauth.resolve_user(OAuthProfile("google", "g-1", "two@example.com"))
        await oauth.link(user.id, OAuthProfile("github", "gh-1", "two@example.com"))

        updated = await oauth.unlink(user.id, "google", "g-1")
        assert [i.provider for i in updated.external_identities] == ["github"]

    async def test_unlink_missing_link(self, oauth, memory_store):
        memory_store.create_user(User(id="u1", email="pw@example.com", password_hash="hash"))
        with pytest.raises(NotFoundError):
            await oauth.unlink("u1", "google", "nope")
