from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from iamprovider.config import Settings
from iamprovider.logging import get_logger
from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.errors import (
    AuthenticationError,
    CannotUnlinkOnlyAuthMethodError,
    NotFoundError,
    OAuthAlreadyLinkedError,
    UserNotFoundError,
    ValidationError,
)
from iamprovider.storage.base import Store
from iamprovider.storage.errors import ConstraintViolation
from iamprovider.storage.models import (
    MAX_EXTERNAL_IDENTITIES,
    ExternalIdentity,
    User,
    new_id,
    utcnow,
)
from iamprovider.storage.redis_cache import RedisCache

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
}

OAUTH_STATE_TTL = timedelta(minutes=10)

logger = get_logger(__name__)


@dataclass
class OAuthProfile:
    """Identity asserted by an external provider after a code exchange."""

    provider: str
    provider_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None

    def to_identity(self) -> ExternalIdentity:
        return ExternalIdentity(
            provider=self.provider,
            provider_id=self.provider_id,
            email=self.email.lower() if self.email else None,
            display_name=self.display_name,
            avatar_url=self.avatar_url,
            linked_at=utcnow(),
        )


class OAuthService:
    """Authorization-code flow for Google and GitHub plus account resolution."""

    def __init__(
        self,
        store: Store,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        call: Optional[BoundedCaller] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._call = call or BoundedCaller(None)
        # Tests inject an httpx.MockTransport here
        self._transport = transport
        self._oauth_states: Dict[str, Tuple[str, datetime, Optional[str]]] = {}
        self._oauth_code_registry: Dict[Tuple[str, str], OAuthProfile] = {}
        self._state_lock = threading.Lock()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _get_oauth_credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        """Get OAuth client credentials for a provider."""
        if provider == "google":
            return self.settings.oauth_google_client_id, self.settings.oauth_google_client_secret
        elif provider == "github":
            return self.settings.oauth_github_client_id, self.settings.oauth_github_client_secret
        return None, None

    def _callback_url(self, provider: str) -> str:
        if provider == "google":
            return self._validate_redirect_uri(self.settings.oauth_google_callback_url)
        return self._validate_redirect_uri(self.settings.oauth_github_callback_url)

    def _validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise ValidationError("OAuth redirect URI must be http(s)")
        if parsed.scheme == "http" and parsed.hostname not in {"localhost", "127.0.0.1"}:
            raise ValidationError("insecure redirect URI not allowed outside localhost")
        if not parsed.netloc:
            raise ValidationError("OAuth redirect URI must include host")
        return redirect_uri

    def _require_provider(self, provider: str) -> None:
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError(f"unsupported OAuth provider: {provider}")

    # state handling
    async def start(self, provider: str, *, link_user_id: Optional[str] = None) -> dict:
        """Build the provider authorize URL with a fresh single-use state."""
        self._require_provider(provider)
        self.cleanup_expired_states()

        client_id, _ = self._get_oauth_credentials(provider)
        if not client_id:
            self.logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(f"OAuth provider {provider} is not configured")

        state = uuid.uuid4().hex
        expires_at = self._now() + OAUTH_STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(
                state,
                {
                    "provider": provider,
                    "link_user_id": link_user_id,
                    "expires_at": expires_at.isoformat(),
                },
                expires_at,
            )
        else:
            with self._state_lock:
                self._oauth_states[state] = (provider, expires_at, link_user_id)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": self._callback_url(provider),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"

        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def consume_state(self, provider: str, state: str) -> Optional[str]:
        """Validate and burn a state value; returns the linking user id, if any."""
        if not state:
            raise AuthenticationError("missing OAuth state")
        stored: Optional[Tuple[str, datetime, Optional[str]]] = None
        if self.cache:
            payload = await self.cache.pop_oauth_state(state)
            if payload:
                try:
                    expires_at = datetime.fromisoformat(payload["expires_at"])
                except (KeyError, TypeError, ValueError):
                    expires_at = self._now() - timedelta(seconds=1)
                stored = (payload.get("provider", ""), expires_at, payload.get("link_user_id"))
        else:
            with self._state_lock:
                stored = self._oauth_states.pop(state, None)
        if not stored or stored[0] != provider or stored[1] < self._now():
            self.logger.warning("oauth_state_rejected", provider=provider)
            raise AuthenticationError("invalid or expired OAuth state")
        return stored[2]

    def cleanup_expired_states(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [
                state for state, (_, expires_at, _) in self._oauth_states.items()
                if expires_at < now
            ]
            for state in expired:
                self._oauth_states.pop(state, None)
        return len(expired)

    # code exchange
    def register_oauth_code(self, provider: str, code: str, profile: OAuthProfile) -> None:
        """Record an exchanged OAuth profile for testing or offline flows."""
        self._oauth_code_registry[(provider, code)] = profile

    async def exchange_code(self, provider: str, code: str) -> OAuthProfile:
        self._require_provider(provider)
        profile = self._oauth_code_registry.pop((provider, code), None)
        if profile is None:
            profile = await self._exchange_oauth_code(provider, code)
        if profile is None:
            raise AuthenticationError(f"{provider.capitalize()} authentication failed")
        return profile

    async def _exchange_oauth_code(self, provider: str, code: str) -> Optional[OAuthProfile]:
        client_id, client_secret = self._get_oauth_credentials(provider)
        if not client_id or not client_secret:
            self.logger.error("oauth_credentials_missing", provider=provider)
            return None

        provider_config = OAUTH_PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=30.0, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": self._callback_url(provider),
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    self.logger.error("oauth_no_access_token", provider=provider)
                    return None

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                # GitHub requires a special header
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"

                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    self.logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None

                profile = self._parse_oauth_userinfo(provider, userinfo)
                if not profile.provider_id:
                    self.logger.error("oauth_identity_missing_uid", provider=provider)
                    return None

                # GitHub hides private emails from /user
                if provider == "github" and not profile.email:
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        profile.email = next(
                            (
                                e["email"]
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )

                if not profile.email:
                    self.logger.error("oauth_identity_missing_email", provider=provider)
                    return None

                self.logger.info(
                    "oauth_exchange_success", provider=provider, provider_id=profile.provider_id
                )
                return profile

        except httpx.HTTPStatusError as e:
            self.logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=e.response.status_code,
                error=str(e),
            )
            return None
        except (httpx.HTTPError, ValueError) as e:
            self.logger.error("oauth_exchange_error", provider=provider, error=str(e))
            return None

    def _parse_oauth_userinfo(self, provider: str, userinfo: Dict[str, Any]) -> OAuthProfile:
        """Parse user info from OAuth provider into standardized format."""
        if provider == "google":
            return OAuthProfile(
                provider=provider,
                provider_id=str(userinfo.get("id") or ""),
                email=userinfo.get("email"),
                display_name=userinfo.get("name"),
                avatar_url=userinfo.get("picture"),
            )
        return OAuthProfile(
            provider=provider,
            provider_id=str(userinfo.get("id") or ""),
            email=userinfo.get("email"),
            display_name=userinfo.get("name") or userinfo.get("login"),
            avatar_url=userinfo.get("avatar_url"),
        )

    # account resolution
    async def resolve_user(self, profile: OAuthProfile) -> User:
        """Find or create the local account for a provider profile.

        Order: an existing link wins, then an account with the same email is
        auto-linked, otherwise a verified password-less account is created.
        """
        user = await self._call(
            self.store.find_user_by_external_identity, profile.provider, profile.provider_id
        )
        if user:
            return user

        if profile.email:
            user = await self._call(self.store.find_user_by_email, profile.email.lower())
            if user:
                # Leave accounts the login gate refuses unlinked
                if not user.is_active or user.is_locked():
                    return user
                if len(user.external_identities) >= MAX_EXTERNAL_IDENTITIES:
                    raise ValidationError(
                        f"at most {MAX_EXTERNAL_IDENTITIES} linked accounts per user"
                    )
                linked = await self._add_identity(user.id, profile)
                self.logger.info(
                    "oauth_identity_auto_linked", user_id=user.id, provider=profile.provider
                )
                return linked

        if not profile.email:
            raise AuthenticationError("provider did not supply an email address")
        now = utcnow()
        new_user = User(
            id=new_id(),
            email=profile.email.lower(),
            is_email_verified=True,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            external_identities=[profile.to_identity()],
            created_at=now,
            updated_at=now,
        )
        try:
            created = await self._call(self.store.create_user, new_user)
        except ConstraintViolation as exc:
            if exc.field == "external_identities":
                raise OAuthAlreadyLinkedError()
            raise
        self.logger.info("oauth_user_created", user_id=created.id, provider=profile.provider)
        return created

    async def _add_identity(self, user_id: str, profile: OAuthProfile) -> User:
        try:
            updated = await self._call(
                self.store.add_external_identity, user_id, profile.to_identity()
            )
        except ConstraintViolation:
            raise OAuthAlreadyLinkedError()
        if not updated:
            raise UserNotFoundError()
        return updated

    async def link(self, user_id: str, profile: OAuthProfile) -> User:
        existing = await self._call(
            self.store.find_user_by_external_identity, profile.provider, profile.provider_id
        )
        if existing and existing.id != user_id:
            raise OAuthAlreadyLinkedError()
        if existing:
            return existing
        user = await self._call(self.store.find_user_by_id, user_id)
        if not user:
            raise UserNotFoundError()
        if len(user.external_identities) >= MAX_EXTERNAL_IDENTITIES:
            raise ValidationError(f"at most {MAX_EXTERNAL_IDENTITIES} linked accounts per user")
        linked = await self._add_identity(user_id, profile)
        self.logger.info("oauth_identity_linked", user_id=user_id, provider=profile.provider)
        return linked

    async def unlink(self, user_id: str, provider: str, provider_id: str) -> User:
        user = await self._call(self.store.find_user_by_id, user_id)
        if not user:
            raise UserNotFoundError()
        remaining = [
            identity
            for identity in user.external_identities
            if not (identity.provider == provider and identity.provider_id == provider_id)
        ]
        if len(remaining) == len(user.external_identities):
            raise NotFoundError("linked account not found")
        if not user.password_hash and not remaining:
            raise CannotUnlinkOnlyAuthMethodError()
        updated = await self._call(
            self.store.remove_external_identity, user_id, provider, provider_id
        )
        if not updated:
            raise UserNotFoundError()
        self.logger.info("oauth_identity_unlinked", user_id=user_id, provider=provider)
        return updated
