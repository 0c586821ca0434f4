from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from iamprovider.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment environments accepted by the service."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the identity provider."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    port: int = env_field(3010, "PORT", gt=0)
    cors_origins: list[str] = env_field(
        ["http://localhost:3000"],
        "WHITE_LIST_URLS",
        description="Comma separated list of origins allowed by CORS",
    )

    # Persistence
    database_url: str = env_field(
        "postgresql://localhost:5432/iam_provider", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        gt=0,
        description="Upper bound for a single credential store or token ledger call",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (generated secrets, runtime resets)",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("iam-provider", "JWT_ISSUER")
    jwt_audience: str = env_field("iam-clients", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        900, "JWT_ACCESS_TOKEN_EXPIRES_IN_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        604800, "JWT_REFRESH_TOKEN_EXPIRES_IN_SECONDS", gt=0
    )
    max_active_sessions: int = env_field(
        1,
        "MAX_ACTIVE_SESSIONS",
        gt=0,
        description="A new login evicts every prior session once this many are active",
    )

    # Account security
    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS", gt=0)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", gt=0)
    inactive_account_retention_days: int = env_field(
        30, "INACTIVE_ACCOUNT_RETENTION_DAYS", gt=0
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASS")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="STARTTLS when true, implicit TLS otherwise"
    )
    email_from_address: str = env_field("noreply@localhost.local", "SMTP_FROM")
    email_from_name: str = env_field("IAM Provider", "EMAIL_FROM_NAME")
    email_timeout_seconds: float = env_field(30.0, "EMAIL_TIMEOUT_SECONDS", gt=0)
    verification_token_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TOKEN_EXPIRES_HOURS", gt=0
    )
    password_reset_token_ttl_hours: int = env_field(
        1, "PASSWORD_RESET_TOKEN_EXPIRES_HOURS", gt=0
    )

    # WebAuthn
    webauthn_rp_name: str = env_field("IAM Provider", "WEBAUTHN_RELYING_PARTY_NAME")
    webauthn_rp_id: str = env_field("localhost", "WEBAUTHN_RELYING_PARTY_ID")
    webauthn_origin: str = env_field("http://localhost:3000", "WEBAUTHN_ORIGIN")
    webauthn_challenge_ttl_seconds: int = env_field(
        300, "WEBAUTHN_CHALLENGE_TTL_SECONDS", gt=0
    )

    # OAuth
    oauth_google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    oauth_google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    oauth_google_callback_url: str = env_field(
        "http://localhost:3010/api/v1/oauth/google/callback", "GOOGLE_CALLBACK_URL"
    )
    oauth_github_client_id: str | None = env_field(None, "GITHUB_CLIENT_ID")
    oauth_github_client_secret: str | None = env_field(None, "GITHUB_CLIENT_SECRET")
    oauth_github_callback_url: str = env_field(
        "http://localhost:3010/api/v1/oauth/github/callback", "GITHUB_CALLBACK_URL"
    )
    oauth_success_redirect_url: str = env_field(
        "http://localhost:3000/auth/callback", "OAUTH_SUCCESS_REDIRECT_URL"
    )

    # Rate limiting and housekeeping
    auth_rate_limit: int = env_field(
        10, "AUTH_RATE_LIMIT", gt=0, description="Requests per window on public auth routes"
    )
    auth_rate_limit_window_seconds: int = env_field(
        600, "AUTH_RATE_LIMIT_WINDOW_SECONDS", gt=0
    )
    maintenance_interval_seconds: int = env_field(
        60,
        "MAINTENANCE_INTERVAL_SECONDS",
        gt=0,
        description="Interval of the expired token / deleted account sweep",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("redis_url", "smtp_host", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        test_mode = str(os.getenv("TEST_MODE", "")).lower() in {"1", "true", "yes", "on"}
        if not test_mode:
            raise ValueError("JWT_SECRET environment variable is required")
        # Ephemeral secret; issued tokens do not survive a restart
        logger.warning("jwt_secret_generated", reason="test_mode")
        return secrets.token_urlsafe(48)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
