from __future__ import annotations

import os
from enum import Enum
from typing import Any
from urllib.parse import urljoin, urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TEST = "test"


class RateLimitRule(BaseModel):
    """Requests allowed per sliding window for a single action."""

    limit: int
    window_seconds: int

    @property
    def active(self) -> bool:
        return self.limit > 0 and self.window_seconds > 0


# action -> (env prefix, default limit, default window seconds)
RATE_LIMIT_DEFAULTS: dict[str, tuple[str, int, int]] = {
    "register": ("RATE_LIMIT_REGISTER", 3, 3600),
    "login": ("RATE_LIMIT_LOGIN", 5, 900),
    "password": ("RATE_LIMIT_PASSWORD", 5, 900),
    "verify_email": ("RATE_LIMIT_VERIFY_EMAIL", 3, 3600),
    "google": ("RATE_LIMIT_GOOGLE", 10, 900),
    "logout": ("RATE_LIMIT_LOGOUT", 10, 60),
}

PRODUCTION_COOKIE_NAME = "__Host-session"
DEFAULT_COOKIE_NAME = "session"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    env: Environment = env_field(Environment.DEVELOPMENT, "ENV")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    database_url: str = env_field(
        "postgresql://app@localhost:5432/app", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-memory collaborators for test runs.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Sessions
    session_max_age_seconds: int = env_field(7 * 24 * 60 * 60, "SESSION_MAX_AGE_SECONDS")
    session_idle_timeout_seconds: int = env_field(
        30 * 60,
        "SESSION_IDLE_TIMEOUT_SECONDS",
        description="Idle timeout in seconds; 0 disables the idle check",
    )
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER")
    auth_cookie_secure: bool | None = env_field(None, "AUTH_COOKIE_SECURE")
    post_login_redirect_url: str | None = env_field(
        None, "AUTH_POST_LOGIN_REDIRECT_URL"
    )

    # Lockout and verification
    lockout_threshold: int = env_field(10, "LOCKOUT_THRESHOLD")
    lockout_duration_seconds: int = env_field(30 * 60, "LOCKOUT_DURATION_SECONDS")
    email_verification_ttl_seconds: int = env_field(
        24 * 60 * 60, "EMAIL_VERIFICATION_TTL_SECONDS"
    )

    # Rate limiting
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limits: dict[str, RateLimitRule] = Field(
        default_factory=dict, validate_default=True
    )

    # Google OAuth
    google_client_id: str | None = env_field(None, "GOOGLE_CLIENT_ID")
    google_client_secret: str | None = env_field(None, "GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str | None = env_field(None, "GOOGLE_REDIRECT_URI")
    oauth_http_timeout_seconds: float = env_field(10.0, "OAUTH_HTTP_TIMEOUT_SECONDS")

    # Mail
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Sessionguard", "EMAIL_FROM_NAME")

    # Audit retention
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS")
    audit_cleanup_enabled: bool = env_field(False, "AUDIT_CLEANUP_ENABLED")
    audit_cleanup_interval_seconds: int = env_field(
        24 * 60 * 60, "AUDIT_CLEANUP_INTERVAL_SECONDS"
    )
    audit_cleanup_timeout_seconds: int = env_field(60, "AUDIT_CLEANUP_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")

        def lookup(env_name: str) -> str | None:
            if env_name in os.environ:
                return os.environ[env_name]
            return env_file_values.get(env_name)

        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            if not env_key:
                continue
            value = lookup(env_key)
            if value is not None and value != "":
                merged[name] = value

        rules: dict[str, RateLimitRule] = {}
        for action, (prefix, limit, window) in RATE_LIMIT_DEFAULTS.items():
            raw_limit = lookup(f"{prefix}_LIMIT")
            raw_window = lookup(f"{prefix}_WINDOW_SECONDS")
            rules[action] = RateLimitRule(
                limit=_int_or_default(raw_limit, limit, f"{prefix}_LIMIT"),
                window_seconds=_int_or_default(
                    raw_window, window, f"{prefix}_WINDOW_SECONDS"
                ),
            )
        merged["rate_limits"] = rules
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("rate_limits")
    @classmethod
    def _fill_rate_limits(cls, value: dict[str, RateLimitRule]) -> dict[str, RateLimitRule]:
        filled = dict(value)
        for action, (_, limit, window) in RATE_LIMIT_DEFAULTS.items():
            filled.setdefault(action, RateLimitRule(limit=limit, window_seconds=window))
        return filled

    @model_validator(mode="after")
    def _validate_post_login_redirect(self) -> "Settings":
        target = self.post_login_redirect_url
        if not target:
            return self
        # Browsers read a backslash as a slash and drop tabs and newlines
        if "\\" in target or any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in target):
            raise ValueError("AUTH_POST_LOGIN_REDIRECT_URL contains forbidden characters")
        parsed = urlparse(urljoin(self.app_base_url + "/", target))
        base = urlparse(self.app_base_url)
        if (parsed.scheme, parsed.netloc) != (base.scheme, base.netloc):
            raise ValueError(
                "AUTH_POST_LOGIN_REDIRECT_URL must be a relative path or share the APP_BASE_URL origin"
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION

    @property
    def session_cookie_secure(self) -> bool:
        if self.auth_cookie_secure is not None:
            return self.auth_cookie_secure
        return self.is_production

    @property
    def session_cookie_name(self) -> str:
        # The __Host- prefix is only honored by browsers over secure transport
        if self.is_production and self.session_cookie_secure:
            return PRODUCTION_COOKIE_NAME
        return DEFAULT_COOKIE_NAME

    @property
    def session_cookie_samesite(self) -> str:
        return "strict" if self.is_production else "lax"

    def rate_limit_rule(self, action: str) -> RateLimitRule:
        return self.rate_limits[action]


def _int_or_default(raw: str | None, default: int, env_name: str) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("config_invalid_int", env=env_name, value=raw, default=default)
        return default


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
