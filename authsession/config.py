from __future__ import annotations

import os
import secrets
from datetime import timedelta
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authsession.logging import get_logger

logger = get_logger(__name__)


class ThrottlePolicy(BaseModel):
    """Fixed-window attempt limit for one kind of request."""

    name: str
    window_seconds: int = Field(gt=0)
    max_attempts: int = Field(gt=0)
    reset_on_success: bool = False

    model_config = ConfigDict(frozen=True)

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token issuance, sessions, throttling and sweeps."""

    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Redis backing for revocation and throttle stores; in-memory when unset",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    scheduler_enabled: bool = env_field(
        True,
        "SCHEDULER_ENABLED",
        description="Run maintenance sweeps in the background on app startup",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authsession", "JWT_ISSUER")
    jwt_audience: str = env_field("authsession-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Signed lifetime of access tokens; reported back as expires_in",
        gt=0,
    )
    refresh_token_ttl_minutes: int = env_field(
        30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0
    )
    clock_skew_leeway_seconds: int = env_field(0, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)
    # Session lifetimes: remember-me logins keep the long one
    session_ttl_minutes: int = env_field(30 * 24 * 60, "SESSION_TTL_MINUTES", gt=0)
    session_ttl_minutes_short: int = env_field(24 * 60, "SESSION_TTL_MINUTES_SHORT", gt=0)
    session_retention_days: int = env_field(
        30,
        "SESSION_RETENTION_DAYS",
        description="How long invalidated sessions stay visible before the sweep purges them",
        ge=0,
    )
    # Throttling
    login_throttle_window_seconds: int = env_field(15 * 60, "LOGIN_THROTTLE_WINDOW_SECONDS", gt=0)
    login_throttle_max_attempts: int = env_field(5, "LOGIN_THROTTLE_MAX_ATTEMPTS", gt=0)
    register_throttle_window_seconds: int = env_field(
        60 * 60, "REGISTER_THROTTLE_WINDOW_SECONDS", gt=0
    )
    register_throttle_max_attempts: int = env_field(3, "REGISTER_THROTTLE_MAX_ATTEMPTS", gt=0)
    # Maintenance sweeps
    blacklist_sweep_interval_seconds: int = env_field(
        60 * 60, "BLACKLIST_SWEEP_INTERVAL_SECONDS", gt=0
    )
    throttle_sweep_interval_seconds: int = env_field(5 * 60, "THROTTLE_SWEEP_INTERVAL_SECONDS", gt=0)
    session_sweep_interval_seconds: int = env_field(60 * 60, "SESSION_SWEEP_INTERVAL_SECONDS", gt=0)
    scheduler_tick_seconds: float = env_field(1.0, "SCHEDULER_TICK_SECONDS", gt=0)
    # Anomaly detection
    alert_retention_days: int = env_field(7, "ALERT_RETENTION_DAYS", gt=0)
    suspicious_attempt_threshold: int = env_field(3, "SUSPICIOUS_ATTEMPT_THRESHOLD", gt=0)
    suspicious_window_seconds: int = env_field(60 * 60, "SUSPICIOUS_WINDOW_SECONDS", gt=0)

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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", length=len(value))
            return value
        # Tokens signed with a generated secret do not survive a restart.
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is unset; using a per-process secret",
        )
        return secrets.token_urlsafe(64)

    @property
    def access_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.access_token_ttl_minutes)

    @property
    def refresh_token_ttl(self) -> timedelta:
        return timedelta(minutes=self.refresh_token_ttl_minutes)

    @property
    def login_throttle(self) -> ThrottlePolicy:
        return ThrottlePolicy(
            name="login",
            window_seconds=self.login_throttle_window_seconds,
            max_attempts=self.login_throttle_max_attempts,
            reset_on_success=True,
        )

    @property
    def register_throttle(self) -> ThrottlePolicy:
        # Every registration attempt counts, successful or not.
        return ThrottlePolicy(
            name="register",
            window_seconds=self.register_throttle_window_seconds,
            max_attempts=self.register_throttle_max_attempts,
            reset_on_success=False,
        )

    @property
    def session_retention(self) -> timedelta:
        return timedelta(days=self.session_retention_days)

    @property
    def alert_retention(self) -> timedelta:
        return timedelta(days=self.alert_retention_days)

    @property
    def suspicious_window(self) -> timedelta:
        return timedelta(seconds=self.suspicious_window_seconds)

    def session_ttl(self, remember_me: bool) -> timedelta:
        minutes = self.session_ttl_minutes if remember_me else self.session_ttl_minutes_short
        return timedelta(minutes=minutes)


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
