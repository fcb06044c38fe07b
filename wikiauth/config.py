from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from wikiauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core and its HTTP surface."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep all users, sessions and counters in process memory (dev/test only)",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(False, "TEST_MODE")
    kv_timeout_seconds: float = env_field(
        5.0,
        "KV_TIMEOUT_SECONDS",
        description="Per-operation timeout for key-value store calls; a timeout is a deny",
    )
    users_namespace: str = env_field("users", "USERS_NAMESPACE")
    sessions_namespace: str = env_field("sessions", "SESSIONS_NAMESPACE")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Sessions
    session_ttl_hours: int = env_field(24, "SESSION_TTL_HOURS")
    session_cookie_name: str = env_field("wiki_session", "SESSION_COOKIE_NAME")

    # CSRF
    csrf_enabled: bool = env_field(True, "CSRF_ENABLED")
    csrf_secret: str = env_field(None, "CSRF_SECRET", validate_default=True)
    csrf_token_ttl_seconds: int = env_field(60, "CSRF_TOKEN_TTL_SECONDS")

    # CAPTCHA; verification is skipped when no secret is configured
    turnstile_secret_key: str | None = env_field(None, "TURNSTILE_SECRET_KEY")
    turnstile_verify_url: str = env_field(
        "https://challenges.cloudflare.com/turnstile/v0/siteverify",
        "TURNSTILE_VERIFY_URL",
    )

    # Password hashing
    pbkdf2_iterations: int = env_field(100_000, "PBKDF2_ITERATIONS")
    legacy_password_salt: str = env_field(
        "wiki_salt_2024",
        "LEGACY_PASSWORD_SALT",
        description="Static salt of pre-existing V1 hashes; must match the deployed value",
    )

    # Token lifetimes
    confirm_token_ttl_hours: int = env_field(24, "CONFIRM_TOKEN_TTL_HOURS")
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES")

    # Rate limits
    login_ip_max: int = env_field(5, "LOGIN_IP_MAX")
    login_ip_window_seconds: int = env_field(15 * 60, "LOGIN_IP_WINDOW_SECONDS")
    login_email_max: int = env_field(10, "LOGIN_EMAIL_MAX")
    login_email_window_seconds: int = env_field(60 * 60, "LOGIN_EMAIL_WINDOW_SECONDS")
    register_ip_max: int = env_field(3, "REGISTER_IP_MAX")
    register_ip_window_seconds: int = env_field(60 * 60, "REGISTER_IP_WINDOW_SECONDS")
    register_global_max: int = env_field(100, "REGISTER_GLOBAL_MAX")
    register_global_window_seconds: int = env_field(
        24 * 60 * 60, "REGISTER_GLOBAL_WINDOW_SECONDS"
    )

    # Account lockout
    lockout_max_attempts: int = env_field(20, "LOCKOUT_MAX_ATTEMPTS")
    lockout_duration_seconds: int = env_field(60 * 60, "LOCKOUT_DURATION_SECONDS")
    failed_attempts_ttl_seconds: int = env_field(60 * 60, "FAILED_ATTEMPTS_TTL_SECONDS")

    # Registration bot heuristics
    min_form_seconds: float = env_field(3.0, "MIN_FORM_SECONDS")

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

    @field_validator("csrf_secret", mode="before")
    @classmethod
    def _ensure_csrf_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 16:
                raise ValueError("CSRF_SECRET must be at least 16 characters")
            return value
        # Tokens minted with a generated secret only validate on this process
        logger.warning(
            "csrf_secret_generated",
            message="CSRF_SECRET not set; using an ephemeral per-process secret",
        )
        return secrets.token_urlsafe(48)

    @field_validator(
        "session_ttl_hours",
        "csrf_token_ttl_seconds",
        "pbkdf2_iterations",
        "lockout_max_attempts",
        "lockout_duration_seconds",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value


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
