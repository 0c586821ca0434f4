from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from iamprovider.config import get_settings, reset_settings_cache
from iamprovider.logging import get_logger
from iamprovider.service.auth import AuthService
from iamprovider.service.bounded import BoundedCaller
from iamprovider.service.email import EmailNotifier, EmailService
from iamprovider.service.oauth import OAuthService
from iamprovider.service.passkeys import (
    ChallengeStore,
    InMemoryChallengeStore,
    PasskeyService,
    RedisChallengeStore,
)
from iamprovider.service.passwords import PasswordHasher
from iamprovider.service.tokens import TokenCodec, TokenIssuer
from iamprovider.service.users import UserAdminService
from iamprovider.service.verification import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    EmailVerificationService,
    PasswordResetService,
    PurposeTokenService,
)
from iamprovider.storage.memory import MemoryStore
from iamprovider.storage.postgres import PostgresStore
from iamprovider.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    statement_timeout_seconds=self.settings.store_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for passkey challenges, OAuth state and rate limits; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; passkey challenges, OAuth "
                    "state and rate limits are in-memory and single-instance only."
                ),
                mode=fallback_mode,
            )

        settings = self.settings
        self.store_call = BoundedCaller(settings.store_timeout_seconds, label="store")
        # Hashing cost is tuned by the argon2 settings, not by a timeout
        self.hash_call = BoundedCaller(None, label="hasher")

        self.hasher = PasswordHasher.from_settings(settings)
        self.codec = TokenCodec(
            settings.jwt_secret, issuer=settings.jwt_issuer, audience=settings.jwt_audience
        )
        self.issuer = TokenIssuer(
            self.store,
            self.codec,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
            max_active_sessions=settings.max_active_sessions,
            call=self.store_call,
        )
        self.email = EmailService.from_settings(settings)
        self.notifier = EmailNotifier(self.email)
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.issuer,
            settings,
            call=self.store_call,
            hash_call=self.hash_call,
            notifier=self.notifier,
        )
        self.email_verification = EmailVerificationService(
            PurposeTokenService(
                self.codec,
                self.store,
                purpose=EMAIL_VERIFICATION,
                ttl_hours=settings.verification_token_ttl_hours,
                call=self.store_call,
            ),
            self.store,
            notifier=self.notifier,
            call=self.store_call,
        )
        self.password_reset = PasswordResetService(
            PurposeTokenService(
                self.codec,
                self.store,
                purpose=PASSWORD_RESET,
                ttl_hours=settings.password_reset_token_ttl_hours,
                call=self.store_call,
            ),
            self.store,
            self.hasher,
            notifier=self.notifier,
            call=self.store_call,
            hash_call=self.hash_call,
        )
        self.challenges: ChallengeStore = (
            RedisChallengeStore(self.cache) if self.cache else InMemoryChallengeStore()
        )
        self.passkeys = PasskeyService(
            self.store,
            self.challenges,
            rp_id=settings.webauthn_rp_id,
            rp_name=settings.webauthn_rp_name,
            origin=settings.webauthn_origin,
            challenge_ttl_seconds=settings.webauthn_challenge_ttl_seconds,
            call=self.store_call,
        )
        self.oauth = OAuthService(self.store, settings, cache=self.cache, call=self.store_call)
        self.users = UserAdminService(
            self.store,
            self.hasher,
            self.auth,
            call=self.store_call,
            hash_call=self.hash_call,
        )

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            max_active_sessions=settings.max_active_sessions,
        )

    async def close(self) -> None:
        """Flush queued email and release the store pool and Redis client."""
        await self.notifier.drain()
        if self.cache is not None:
            await self.cache.close()
        await asyncio.to_thread(self.store.close)


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def run_maintenance(runtime: Runtime) -> Dict[str, int]:
    """One sweep of expiry work: tokens, deleted accounts, challenges, OAuth state."""
    now = datetime.now(timezone.utc)
    call = runtime.store_call
    results = {
        "refresh_tokens_purged": await call(runtime.store.purge_expired_refresh_tokens, now),
        "users_purged": await call(runtime.store.purge_deleted_users, now),
        "challenges_swept": runtime.challenges.sweep(),
        "oauth_states_swept": runtime.oauth.cleanup_expired_states(),
    }
    if any(results.values()):
        logger.info("maintenance_sweep", **results)
    return results


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit, falling back to process memory without Redis."""
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = datetime.now(timezone.utc)
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, (now - last_ts).total_seconds())
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
