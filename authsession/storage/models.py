from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

Clock = Callable[[], datetime]

BLACKLIST_REASONS = frozenset({"logout", "security", "expired"})
ALERT_TYPES = frozenset({"new_login", "suspicious_activity", "multiple_failed_attempts"})
ALERT_SEVERITIES = ("low", "medium", "high", "critical")


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


@dataclass
class UserRecord:
    id: str
    email: str
    password_hash: str
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Principal:
    """Identity attached to an authenticated request."""

    user_id: str
    email: str
    role: str = "user"
    session_id: Optional[str] = None


@dataclass
class DeviceInfo:
    device_id: str
    user_agent: str = ""
    ip: str = ""
    browser: str = "Unknown"
    os: str = "Unknown"
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)

    @property
    def fingerprint(self) -> tuple[str, str]:
        return (self.user_agent, self.ip)

    def matches(self, other: "DeviceInfo") -> bool:
        """Same device when the user agent is identical or browser, os and ip all agree."""
        if self.user_agent and self.user_agent == other.user_agent:
            return True
        return (
            self.browser == other.browser
            and self.os == other.os
            and self.ip == other.ip
        )


@dataclass
class Session:
    session_id: str
    user_id: str
    device_info: DeviceInfo
    refresh_token: str
    expires_at: datetime
    created_at: datetime
    is_active: bool = True
    invalidated_at: Optional[datetime] = None
    invalidation_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        device_info: DeviceInfo,
        refresh_token: str,
        *,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            device_info=device_info,
            refresh_token=refresh_token,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.expires_at > now


@dataclass
class SessionSummary:
    """Read-only projection of a Session without its refresh token."""

    session_id: str
    device_id: str
    browser: str
    os: str
    ip: str
    user_agent: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime

    @classmethod
    def from_session(cls, session: Session) -> "SessionSummary":
        device = session.device_info
        return cls(
            session_id=session.session_id,
            device_id=device.device_id,
            browser=device.browser,
            os=device.os,
            ip=device.ip,
            user_agent=device.user_agent,
            created_at=session.created_at,
            last_activity=device.last_activity,
            expires_at=session.expires_at,
        )


@dataclass
class BlacklistEntry:
    token_hash: str
    user_id: Optional[str]
    expires_at: datetime
    blacklisted_at: datetime
    reason: str = "logout"


@dataclass
class UserRevocation:
    """Every token for user_id issued at or before revoked_before is revoked."""

    user_id: str
    revoked_before: datetime
    expires_at: datetime
    reason: str = "security"


@dataclass
class AttemptCounter:
    subject_key: str
    count: int
    window_reset_at: datetime


@dataclass
class SecurityAlert:
    type: str
    user_id: str
    message: str
    severity: str = "low"
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
