from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from iamprovider.logging import get_logger
from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.errors import TokenExpiredError, TokenInvalidError
from iamprovider.storage.models import RefreshToken, SessionContext, User

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 64


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest; the only form in which refresh tokens are stored."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def new_family_id() -> str:
    return str(uuid.uuid4())


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenCodec:
    """HS256 JSON Web Token signer/verifier.

    ``verify`` raises :class:`TokenExpiredError` only for a token whose
    signature and claims are otherwise valid; every other failure is
    :class:`TokenInvalidError`.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def sign(self, payload: dict[str, Any], ttl_seconds: int) -> str:
        now = int(time.time())
        claims = {
            **payload,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(claims, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError("malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise TokenInvalidError("malformed")
        # Reject alg confusion before touching the signature
        if not isinstance(header, dict):
            raise TokenInvalidError("malformed")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError("unsupported algorithm")

        expected = self._sign(f"{header_b64}.{payload_b64}").encode()
        if not hmac.compare_digest(expected, sig_b64.encode("utf-8", "surrogatepass")):
            raise TokenInvalidError("bad signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, UnicodeDecodeError, ValueError):
            raise TokenInvalidError("malformed")
        if not isinstance(payload, dict):
            raise TokenInvalidError("malformed")

        if payload.get("iss") != self.issuer:
            raise TokenInvalidError("issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalidError("audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidError("missing expiry")
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenExpiredError()
        return payload


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    record: RefreshToken
    expires_in: int


class TokenIssuer:
    """Mints access/refresh pairs and enforces the active-session limit."""

    def __init__(
        self,
        ledger,
        codec: TokenCodec,
        *,
        access_ttl_seconds: int = 900,
        refresh_ttl_seconds: int = 604800,
        max_active_sessions: int = 1,
        call: Optional[BoundedCaller] = None,
    ) -> None:
        self.ledger = ledger
        self.codec = codec
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds
        self.max_active_sessions = max_active_sessions
        self._call = call or BoundedCaller(None)

    def access_token_for(self, user: User) -> str:
        return self.codec.sign(
            {"sub": user.id, "email": user.email, "isAdmin": bool(user.is_admin)},
            self.access_ttl_seconds,
        )

    async def issue_pair(
        self,
        user: User,
        context: Optional[SessionContext] = None,
        family: Optional[str] = None,
    ) -> IssuedTokens:
        if family is None:
            active = await self._call(self.ledger.count_active_refresh_tokens_by_user, user.id)
            if active >= self.max_active_sessions:
                # Two logins racing here can both pass; the next login re-evicts
                revoked = await self._call(
                    self.ledger.revoke_all_refresh_tokens_by_user, user.id
                )
                logger.info(
                    "sessions_evicted", user_id=user.id, active=active, revoked=revoked
                )
            family = new_family_id()

        raw_refresh = secrets.token_hex(REFRESH_TOKEN_BYTES)
        record = RefreshToken.new(
            user.id,
            hash_token(raw_refresh),
            family,
            self.refresh_ttl_seconds,
            context,
        )
        record = await self._call(self.ledger.create_refresh_token, record)
        return IssuedTokens(
            access_token=self.access_token_for(user),
            refresh_token=raw_refresh,
            record=record,
            expires_in=self.access_ttl_seconds,
        )
