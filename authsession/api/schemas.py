from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # NFKC plus zero-width stripping so look-alike addresses collapse
    cleaned = "".join(c for c in value.strip().lower() if c not in _ZERO_WIDTH)
    normalized = unicodedata.normalize("NFKC", cleaned)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    user_id: str
    new_device: bool = False


class UserResponse(BaseModel):
    user_id: str
    email: str
    role: str = "user"
    session_id: Optional[str] = None


class SessionInfo(BaseModel):
    session_id: str
    device_id: str
    browser: str
    os: str
    ip: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    current: bool = False


class SessionStats(BaseModel):
    active_sessions: int
    total_devices: int
    last_activity: Optional[datetime] = None


class SessionListResponse(BaseModel):
    sessions: List[SessionInfo]
    stats: SessionStats


class SecurityAlertInfo(BaseModel):
    type: str
    severity: str
    message: str
    timestamp: datetime
    details: dict = Field(default_factory=dict)


class SecurityStats(BaseModel):
    total_alerts: int
    critical_alerts: int
    recent_alerts: int
    last_alert: Optional[datetime] = None


class SecurityAlertListResponse(BaseModel):
    alerts: List[SecurityAlertInfo]
    stats: SecurityStats
