from __future__ import annotations

import json
import os
from typing import Any, Tuple

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the trust/session core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/trustcore", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/trustcore", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviors for CI; permits the in-process cache.",
    )
    cache_socket_timeout: float = env_field(
        2.0,
        "CACHE_SOCKET_TIMEOUT",
        description="Upper bound in seconds for any single cache round trip",
    )
    database_pool_timeout: float = env_field(5.0, "DATABASE_POOL_TIMEOUT")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material used to encrypt TOTP secrets at rest",
    )
    totp_issuer: str = env_field("Trustcore", "TOTP_ISSUER")

    # Lifetimes
    session_ttl_days: int = env_field(30, "SESSION_TTL_DAYS")
    pending_ticket_ttl_seconds: int = env_field(300, "PENDING_TICKET_TTL_SECONDS")
    verification_token_ttl_hours: int = env_field(24, "VERIFICATION_TOKEN_TTL_HOURS")
    password_reset_token_ttl_minutes: int = env_field(
        60, "PASSWORD_RESET_TOKEN_TTL_MINUTES"
    )
    account_deletion_token_ttl_minutes: int = env_field(
        60, "ACCOUNT_DELETION_TOKEN_TTL_MINUTES"
    )
    email_change_token_ttl_minutes: int = env_field(
        60, "EMAIL_CHANGE_TOKEN_TTL_MINUTES"
    )
    deletion_grace_period_days: int = env_field(7, "DELETION_GRACE_PERIOD_DAYS")
    require_email_verification: bool = env_field(
        True,
        "REQUIRE_EMAIL_VERIFICATION",
        description="Reject password logins for accounts that never verified their email",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Rate limits: requests allowed per window for each guarded action
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(60, "LOGIN_RATE_WINDOW_SECONDS")
    signup_rate_limit: int = env_field(5, "SIGNUP_RATE_LIMIT")
    signup_rate_window_seconds: int = env_field(3600, "SIGNUP_RATE_WINDOW_SECONDS")
    two_factor_challenge_rate_limit: int = env_field(
        3, "TWO_FACTOR_CHALLENGE_RATE_LIMIT"
    )
    two_factor_challenge_rate_window_seconds: int = env_field(
        300, "TWO_FACTOR_CHALLENGE_RATE_WINDOW_SECONDS"
    )
    recovery_code_rate_limit: int = env_field(3, "RECOVERY_CODE_RATE_LIMIT")
    recovery_code_rate_window_seconds: int = env_field(
        300, "RECOVERY_CODE_RATE_WINDOW_SECONDS"
    )
    two_factor_enroll_rate_limit: int = env_field(5, "TWO_FACTOR_ENROLL_RATE_LIMIT")
    two_factor_enroll_rate_window_seconds: int = env_field(
        300, "TWO_FACTOR_ENROLL_RATE_WINDOW_SECONDS"
    )
    two_factor_disable_rate_limit: int = env_field(3, "TWO_FACTOR_DISABLE_RATE_LIMIT")
    two_factor_disable_rate_window_seconds: int = env_field(
        300, "TWO_FACTOR_DISABLE_RATE_WINDOW_SECONDS"
    )
    account_deletion_rate_limit: int = env_field(3, "ACCOUNT_DELETION_RATE_LIMIT")
    account_deletion_rate_window_seconds: int = env_field(
        3600, "ACCOUNT_DELETION_RATE_WINDOW_SECONDS"
    )
    email_verification_rate_limit: int = env_field(3, "EMAIL_VERIFICATION_RATE_LIMIT")
    email_verification_rate_window_seconds: int = env_field(
        3600, "EMAIL_VERIFICATION_RATE_WINDOW_SECONDS"
    )
    password_reset_rate_limit: int = env_field(3, "PASSWORD_RESET_RATE_LIMIT")
    password_reset_rate_window_seconds: int = env_field(
        3600, "PASSWORD_RESET_RATE_WINDOW_SECONDS"
    )
    email_change_rate_limit: int = env_field(3, "EMAIL_CHANGE_RATE_LIMIT")
    email_change_rate_window_seconds: int = env_field(
        3600, "EMAIL_CHANGE_RATE_WINDOW_SECONDS"
    )
    password_change_rate_limit: int = env_field(10, "PASSWORD_CHANGE_RATE_LIMIT")
    password_change_rate_window_seconds: int = env_field(
        600, "PASSWORD_CHANGE_RATE_WINDOW_SECONDS"
    )

    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Trustcore", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    build_sha: str = env_field("dev", "BUILD_SHA")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [item.strip() for item in stripped.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def rate_limit_policy(self, action: str) -> Tuple[int, int]:
        """Return ``(limit, window_seconds)`` configured for a guarded action."""
        try:
            limit = getattr(self, f"{action}_rate_limit")
            window = getattr(self, f"{action}_rate_window_seconds")
        except AttributeError as exc:
            raise KeyError(f"no rate limit policy for action '{action}'") from exc
        return int(limit), int(window)


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
