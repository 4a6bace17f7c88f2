from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from iamauth.logging import get_logger
from iamauth.service.errors import ConfigurationError

logger = get_logger(__name__)

# HS256 keys shorter than this are rejected at startup
MIN_SIGNING_KEY_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def parse_key_ring(raw: str | None) -> dict[str, str]:
    """Parse ``kid:secret,kid:secret`` into a mapping of previous signing keys."""
    ring: dict[str, str] = {}
    if not raw:
        return ring
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        kid, sep, secret = item.partition(":")
        if not sep or not kid.strip() or not secret.strip():
            raise ValueError("JWT_PREVIOUS_KEYS entries must look like kid:secret")
        ring[kid.strip()] = secret.strip()
    return ring


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Use in-memory directory and session store when Redis is unreachable.",
    )
    directory_url: str | None = env_field(
        None,
        "DIRECTORY_URL",
        description="Base URL of the user/directory service; unset means in-memory directory.",
    )
    directory_api_token: str | None = env_field(None, "DIRECTORY_API_TOKEN")
    store_timeout_seconds: float = env_field(
        2.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for every directory or session-store call.",
    )
    transient_retry_backoff_ms: int = env_field(
        50,
        "TRANSIENT_RETRY_BACKOFF_MS",
        description="Pause before the single retry of an idempotent store call.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("v1", "JWT_KEY_ID")
    jwt_previous_keys: str | None = env_field(
        None,
        "JWT_PREVIOUS_KEYS",
        description="Older signing keys still accepted for validation, as kid:secret pairs.",
    )
    jwt_issuer: str = env_field("iam-auth-service", "JWT_ISSUER")
    jwt_audience: str = env_field("iam-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(0, "JWT_LEEWAY_SECONDS")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(60 * 24 * 7, "REFRESH_TOKEN_TTL_MINUTES")
    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lock_duration_minutes: int = env_field(30, "LOCK_DURATION_MINUTES")
    failed_attempt_window_minutes: int = env_field(
        60 * 24,
        "FAILED_ATTEMPT_WINDOW_MINUTES",
        description="Idle failure counters are evicted by the store after this long.",
    )
    revoke_all_on_reuse: bool = env_field(
        False,
        "REVOKE_ALL_ON_REUSE",
        description="Revoke every session of an account when a rotated refresh token is replayed.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls.load(**merged)

    @classmethod
    def load(cls, **values: Any) -> "Settings":
        """Build settings, reporting invalid input as ``ConfigurationError``."""
        try:
            return cls(**values)
        except ValidationError as exc:
            problems = [
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
                for err in exc.errors()
            ]
            logger.error("configuration_invalid", problems=problems)
            raise ConfigurationError(
                "invalid configuration", detail={"problems": problems}
            ) from exc

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < MIN_SIGNING_KEY_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_SIGNING_KEY_LENGTH} characters"
            )
        return value

    @field_validator("jwt_key_id")
    @classmethod
    def _require_key_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("JWT_KEY_ID must not be empty")
        return value.strip()

    @field_validator("jwt_previous_keys")
    @classmethod
    def _check_key_ring(cls, value: str | None) -> str | None:
        for kid, secret in parse_key_ring(value).items():
            if len(secret) < MIN_SIGNING_KEY_LENGTH:
                raise ValueError(f"previous key {kid} is shorter than {MIN_SIGNING_KEY_LENGTH}")
        return value

    @field_validator(
        "access_token_ttl_minutes",
        "refresh_token_ttl_minutes",
        "lock_duration_minutes",
        "failed_attempt_window_minutes",
        "max_login_attempts",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _require_positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("jwt_leeway_seconds", "transient_retry_backoff_ms")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    def signing_keys(self) -> dict[str, str]:
        """All accepted signing keys by key id; the active key wins on collision."""
        ring = parse_key_ring(self.jwt_previous_keys)
        ring[self.jwt_key_id] = self.jwt_secret or ""
        return ring


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
