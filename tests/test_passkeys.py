"""Tests for WebAuthn ceremonies.

The cryptographic checks belong to py_webauthn and are replaced here by
stubs; these tests cover challenge handling, counter persistence and the
per-account limits.
"""

from types import SimpleNamespace

import pytest
from webauthn.helpers import bytes_to_base64url
from webauthn.helpers.exceptions import InvalidAuthenticationResponse

from iamprovider.service import passkeys as passkeys_module
from iamprovider.service.errors import (
    ConflictError,
    PasskeyChallengeExpiredError,
    PasskeyNotFoundError,
    PasskeyVerificationFailedError,
    UserNotFoundError,
    ValidationError,
)
from iamprovider.service.passkeys import InMemoryChallengeStore, PasskeyService
from iamprovider.storage.models import PasskeyCredential, User

CREDENTIAL_ID = bytes_to_base64url(b"credential-one")


@pytest.fixture
def challenges():
    return InMemoryChallengeStore()


@pytest.fixture
def service(memory_store, challenges):
    return PasskeyService(
        memory_store,
        challenges,
        rp_id="localhost",
        rp_name="IAM Provider",
        origin="http://localhost:3000",
        challenge_ttl_seconds=60,
    )


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(User(id="u1", email="key@example.com", is_email_verified=True))


@pytest.fixture
def user_with_passkey(memory_store, user):
    memory_store.add_passkey(
        user.id,
        PasskeyCredential(
            credential_id=CREDENTIAL_ID,
            public_key=bytes_to_base64url(b"public-key"),
            counter=4,
            display_name="Laptop",
        ),
    )
    return memory_store.find_user_by_id(user.id)


@pytest.fixture
def accept_registration(monkeypatch):
    def _verify(**kwargs):
        return SimpleNamespace(
            credential_id=b"credential-one",
            credential_public_key=b"public-key",
            sign_count=0,
            credential_device_type="multi_device",
            credential_backed_up=True,
        )

    monkeypatch.setattr(passkeys_module, "verify_registration_response", _verify)


@pytest.fixture
def authenticator(monkeypatch):
    """Stub authenticator that enforces a strictly increasing counter."""
    state = {"next": 5}

    def _verify(**kwargs):
        if state["next"] <= kwargs["credential_current_sign_count"]:
            raise InvalidAuthenticationResponse("counter did not increase")
        return SimpleNamespace(new_sign_count=state["next"])

    monkeypatch.setattr(passkeys_module, "verify_authentication_response", _verify)
    return state


class TestChallengeStore:
    async def test_take_is_single_use(self, challenges):
        await challenges.put("u1", "abc", 60)
        assert await challenges.take("u1") == "abc"
        assert await challenges.take("u1") is None

    async def test_new_challenge_replaces_old(self, challenges):
        await challenges.put("u1", "first", 60)
        await challenges.put("u1", "second", 60)
        assert await challenges.take("u1") == "second"

    async def test_expired_challenges_are_swept(self, challenges):
        await challenges.put("u1", "abc", -1)
        await challenges.put("u2", "def", 60)
        assert challenges.sweep() == 1
        assert len(challenges) == 1


class TestRegistration:
    async def test_options_store_a_challenge(self, service, user, challenges):
        options = await service.registration_options(user)

        assert options["rp"]["id"] == "localhost"
        assert options["attestation"] == "none"
        assert options["authenticatorSelection"]["authenticatorAttachment"] == "platform"
        assert len(challenges) == 1

    async def test_verify_persists_passkey(self, service, user, memory_store, accept_registration):
        await service.registration_options(user)
        response = {"id": CREDENTIAL_ID, "response": {"transports": ["internal", "hybrid"]}}

        passkey = await service.verify_registration(user, response, "Laptop")

        assert passkey.credential_id == CREDENTIAL_ID
        assert passkey.device_type == "multiDevice"
        assert passkey.backed_up is True
        assert passkey.transports == ["internal", "hybrid"]
        assert memory_store.find_user_by_id(user.id).find_passkey(CREDENTIAL_ID) is not None

    async def test_verify_without_options_fails(self, service, user, accept_registration):
        with pytest.raises(PasskeyChallengeExpiredError):
            await service.verify_registration(user, {"id": CREDENTIAL_ID}, "Laptop")

    async def test_duplicate_credential_conflicts(
        self, service, memory_store, user_with_passkey, accept_registration
    ):
        other = memory_store.create_user(User(id="u2", email="other@example.com"))
        await service.registration_options(other)
        with pytest.raises(ConflictError):
            await service.verify_registration(other, {"id": CREDENTIAL_ID}, "Phone")

    async def test_limit_of_five(self, service, memory_store, user):
        for index in range(5):
            memory_store.add_passkey(
                user.id,
                PasskeyCredential(
                    credential_id=bytes_to_base64url(f"cred-{index}".encode()),
                    public_key="pk",
                    counter=0,
                    display_name=f"Key {index}",
                ),
            )
        with pytest.raises(ValidationError):
            await service.registration_options(memory_store.find_user_by_id(user.id))


class TestAuthentication:
    async def test_counter_is_persisted(self, service, memory_store, user_with_passkey, authenticator):
        """A successful assertion stores the authenticator's new counter."""
        await service.authentication_options(user_with_passkey.email)

        updated = await service.verify_authentication(
            user_with_passkey.email, {"id": CREDENTIAL_ID, "rawId": CREDENTIAL_ID}
        )

        passkey = updated.find_passkey(CREDENTIAL_ID)
        assert passkey.counter == 5
        assert passkey.last_used_at is not None
        assert memory_store.find_user_by_id(user_with_passkey.id).find_passkey(
            CREDENTIAL_ID
        ).counter == 5

    async def test_replayed_counter_rejected(self, service, user_with_passkey, authenticator):
        """Replaying the same counter after it was persisted fails verification."""
        await service.authentication_options(user_with_passkey.email)
        await service.verify_authentication(user_with_passkey.email, {"id": CREDENTIAL_ID})

        await service.authentication_options(user_with_passkey.email)
        with pytest.raises(PasskeyVerificationFailedError):
            await service.verify_authentication(user_with_passkey.email, {"id": CREDENTIAL_ID})

    async def test_challenge_is_single_use(self, service, user_with_passkey, authenticator):
        await service.authentication_options(user_with_passkey.email)
        await service.verify_authentication(user_with_passkey.email, {"id": CREDENTIAL_ID})
        authenticator["next"] = 6
        with pytest.raises(PasskeyChallengeExpiredError):
            await service.verify_authentication(user_with_passkey.email, {"id": CREDENTIAL_ID})

    async def test_unknown_credential(self, service, user_with_passkey, authenticator):
        await service.authentication_options(user_with_passkey.email)
        with pytest.raises(PasskeyNotFoundError):
            await service.verify_authentication(user_with_passkey.email, {"id": "bm9wZQ"})

    async def test_user_without_passkeys(self, service, user):
        with pytest.raises(UserNotFoundError):
            await service.authentication_options(user.email)

    async def test_options_list_allowed_credentials(self, service, user_with_passkey):
        options = await service.authentication_options(user_with_passkey.email)
        assert [c["id"] for c in options["allowCredentials"]] == [CREDENTIAL_ID]


class TestManagement:
    async def test_list_and_remove(self, service, user_with_passkey):
        assert len(await service.list_passkeys(user_with_passkey.id)) == 1
        await service.remove_passkey(user_with_passkey.id, CREDENTIAL_ID)
        assert await service.list_passkeys(user_with_passkey.id) == []

    async def test_remove_unknown(self, service, user):
        with pytest.raises(PasskeyNotFoundError):
            await service.remove_passkey(user.id, CREDENTIAL_ID)
