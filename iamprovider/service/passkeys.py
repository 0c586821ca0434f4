from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.exceptions import (
    InvalidAuthenticationResponse,
    InvalidRegistrationResponse,
)
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorAttachment,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from iamprovider.logging import get_logger
from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.errors import (
    ConflictError,
    PasskeyChallengeExpiredError,
    PasskeyNotFoundError,
    PasskeyVerificationFailedError,
    UserNotFoundError,
    ValidationError,
)
from iamprovider.storage.base import Store
from iamprovider.storage.errors import ConstraintViolation
from iamprovider.storage.models import (
    MAX_PASSKEY_TRANSPORTS,
    MAX_PASSKEYS,
    PasskeyCredential,
    User,
    utcnow,
)
from iamprovider.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_KNOWN_TRANSPORTS = {t.value for t in AuthenticatorTransport}


class ChallengeStore(Protocol):
    """One outstanding WebAuthn challenge per user; a new one replaces the old."""

    async def put(self, user_id: str, challenge: str, ttl_seconds: int) -> None: ...

    async def take(self, user_id: str) -> Optional[str]: ...

    def sweep(self) -> int: ...


class RedisChallengeStore:
    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache

    async def put(self, user_id: str, challenge: str, ttl_seconds: int) -> None:
        await self.cache.put_challenge(user_id, challenge, ttl_seconds)

    async def take(self, user_id: str) -> Optional[str]:
        return await self.cache.take_challenge(user_id)

    def sweep(self) -> int:
        # Redis expires keys on its own
        return 0


class InMemoryChallengeStore:
    """Process-local challenge slots.

    Only valid for a single instance: a ceremony started on one process
    cannot finish on another. Expired entries are removed lazily on ``take``
    and in bulk by ``sweep``.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, Tuple[str, float]] = {}

    async def put(self, user_id: str, challenge: str, ttl_seconds: int) -> None:
        self._slots[user_id] = (challenge, time.monotonic() + ttl_seconds)

    async def take(self, user_id: str) -> Optional[str]:
        entry = self._slots.pop(user_id, None)
        if entry is None:
            return None
        challenge, expires_at = entry
        if time.monotonic() > expires_at:
            return None
        return challenge

    def sweep(self) -> int:
        now = time.monotonic()
        expired = [uid for uid, (_, expires_at) in self._slots.items() if now > expires_at]
        for uid in expired:
            self._slots.pop(uid, None)
        return len(expired)

    def __len__(self) -> int:
        return len(self._slots)


def _transports(values: Optional[List[str]]) -> Optional[List[AuthenticatorTransport]]:
    if not values:
        return None
    return [AuthenticatorTransport(v) for v in values if v in _KNOWN_TRANSPORTS]


def _descriptors(user: User) -> List[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(
            id=base64url_to_bytes(passkey.credential_id),
            transports=_transports(passkey.transports),
        )
        for passkey in user.passkeys
    ]


def _as_dict(response: Any) -> Dict[str, Any]:
    if isinstance(response, str):
        try:
            response = json.loads(response)
        except ValueError:
            raise PasskeyVerificationFailedError("malformed credential response")
    if not isinstance(response, dict):
        raise PasskeyVerificationFailedError("malformed credential response")
    return response


class PasskeyService:
    """WebAuthn registration and authentication ceremonies."""

    def __init__(
        self,
        store: Store,
        challenges: ChallengeStore,
        *,
        rp_id: str,
        rp_name: str,
        origin: str,
        challenge_ttl_seconds: int = 300,
        call: Optional[BoundedCaller] = None,
    ) -> None:
        self.store = store
        self.challenges = challenges
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self._call = call or BoundedCaller(None)

    async def _stash(self, user_id: str, challenge: bytes) -> None:
        await self.challenges.put(
            user_id, bytes_to_base64url(challenge), self.challenge_ttl_seconds
        )

    async def _expected_challenge(self, user_id: str) -> bytes:
        stored = await self.challenges.take(user_id)
        if not stored:
            raise PasskeyChallengeExpiredError()
        return base64url_to_bytes(stored)

    # registration
    async def registration_options(self, user: User) -> Dict[str, Any]:
        if len(user.passkeys) >= MAX_PASSKEYS:
            raise ValidationError(f"at most {MAX_PASSKEYS} passkeys per account")
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_name=user.email,
            user_id=user.id.encode("utf-8"),
            user_display_name=user.display_name or user.email,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                authenticator_attachment=AuthenticatorAttachment.PLATFORM,
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=_descriptors(user),
        )
        await self._stash(user.id, options.challenge)
        return json.loads(options_to_json(options))

    async def verify_registration(
        self, user: User, response: Any, display_name: str
    ) -> PasskeyCredential:
        expected_challenge = await self._expected_challenge(user.id)
        credential = _as_dict(response)
        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except InvalidRegistrationResponse as exc:
            logger.warning("passkey_registration_rejected", user_id=user.id, error=str(exc))
            raise PasskeyVerificationFailedError()

        raw_transports = (credential.get("response") or {}).get("transports") or []
        transports = [t for t in raw_transports if isinstance(t, str)][:MAX_PASSKEY_TRANSPORTS]
        device_type = getattr(verified.credential_device_type, "value", verified.credential_device_type)
        passkey = PasskeyCredential(
            credential_id=bytes_to_base64url(verified.credential_id),
            public_key=bytes_to_base64url(verified.credential_public_key),
            counter=verified.sign_count,
            display_name=display_name,
            device_type="singleDevice" if device_type == "single_device" else "multiDevice",
            backed_up=bool(verified.credential_backed_up),
            transports=transports or None,
            created_at=utcnow(),
        )
        current = await self._call(self.store.find_user_by_id, user.id)
        if not current:
            raise UserNotFoundError()
        if len(current.passkeys) >= MAX_PASSKEYS:
            raise ValidationError(f"at most {MAX_PASSKEYS} passkeys per account")
        try:
            updated = await self._call(self.store.add_passkey, user.id, passkey)
        except ConstraintViolation:
            raise ConflictError("passkey already registered")
        if not updated:
            raise UserNotFoundError()
        logger.info("passkey_registered", user_id=user.id, device_type=passkey.device_type)
        return passkey

    # authentication
    async def _user_with_passkeys(self, email: str) -> User:
        user = await self._call(self.store.find_user_by_email, email.strip().lower())
        if not user or not user.passkeys:
            raise UserNotFoundError()
        return user

    async def authentication_options(self, email: str) -> Dict[str, Any]:
        user = await self._user_with_passkeys(email)
        options = generate_authentication_options(
            rp_id=self.rp_id,
            allow_credentials=_descriptors(user),
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        await self._stash(user.id, options.challenge)
        return json.loads(options_to_json(options))

    async def verify_authentication(self, email: str, response: Any) -> User:
        """Run the assertion check and persist the authenticator's new counter."""
        user = await self._user_with_passkeys(email)
        expected_challenge = await self._expected_challenge(user.id)
        credential = _as_dict(response)
        passkey = user.find_passkey(str(credential.get("id") or credential.get("rawId") or ""))
        if passkey is None:
            raise PasskeyNotFoundError()
        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=expected_challenge,
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(passkey.public_key),
                credential_current_sign_count=passkey.counter,
            )
        except InvalidAuthenticationResponse as exc:
            logger.warning(
                "passkey_authentication_rejected",
                user_id=user.id,
                credential_id=passkey.credential_id,
                error=str(exc),
            )
            raise PasskeyVerificationFailedError()

        updated = await self._call(
            self.store.update_passkey_counter,
            user.id,
            passkey.credential_id,
            verified.new_sign_count,
        )
        if not updated:
            raise PasskeyNotFoundError()
        return updated

    async def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        user = await self._call(self.store.find_user_by_id, user_id)
        if not user:
            raise UserNotFoundError()
        return user.passkeys

    async def remove_passkey(self, user_id: str, credential_id: str) -> None:
        user = await self._call(self.store.find_user_by_id, user_id)
        if not user:
            raise UserNotFoundError()
        if user.find_passkey(credential_id) is None:
            raise PasskeyNotFoundError()
        await self._call(self.store.remove_passkey, user_id, credential_id)
        logger.info("passkey_removed", user_id=user_id)
