from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from authsession.logging import get_logger
from authsession.service.sessions import SessionRegistry
from authsession.storage.models import (
    ALERT_SEVERITIES,
    ALERT_TYPES,
    Clock,
    DeviceInfo,
    SecurityAlert,
    utcnow,
)

logger = get_logger(__name__)

FAILED_ATTEMPT = "multiple_failed_attempts"
NEW_LOGIN = "new_login"
SUSPICIOUS_ACTIVITY = "suspicious_activity"


@dataclass
class NewDeviceResult:
    is_new_device: bool
    alert: Optional[SecurityAlert] = None


class AnomalyDetector:
    """Flags logins from unseen devices and bursts of failed attempts.

    Alerts are advisory. Nothing here blocks a login.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        *,
        clock: Clock = utcnow,
        alert_retention: timedelta = timedelta(days=7),
        suspicious_window: timedelta = timedelta(hours=1),
        suspicious_threshold: int = 3,
    ) -> None:
        self.sessions = sessions
        self._clock = clock
        self.alert_retention = alert_retention
        self.suspicious_window = suspicious_window
        self.suspicious_threshold = suspicious_threshold
        self.alerts: List[SecurityAlert] = []
        self._alerts_lock = threading.Lock()

    def _emit(self, alert: SecurityAlert) -> SecurityAlert:
        if alert.type not in ALERT_TYPES:
            raise ValueError(f"unknown alert type: {alert.type}")
        if alert.severity not in ALERT_SEVERITIES:
            raise ValueError(f"unknown alert severity: {alert.severity}")
        with self._alerts_lock:
            self.alerts.append(alert)
        log_fn = logger.warning if alert.severity in {"high", "critical"} else logger.info
        log_fn(
            "security_alert",
            alert_type=alert.type,
            severity=alert.severity,
            user_id=alert.user_id,
            ip=alert.details.get("ip"),
        )
        return alert

    async def check_new_device(
        self,
        user_id: str,
        device_info: DeviceInfo,
        exclude_session_id: Optional[str] = None,
    ) -> NewDeviceResult:
        known = [
            s.device_info
            for s in await self.sessions.list_active(user_id)
            if s.session_id != exclude_session_id
        ]
        # First session for this user is the baseline, not an anomaly.
        if not known:
            return NewDeviceResult(is_new_device=False)
        if any(device.matches(device_info) for device in known):
            return NewDeviceResult(is_new_device=False)
        alert = self._emit(
            SecurityAlert(
                type=NEW_LOGIN,
                user_id=user_id,
                message=f"New login from {device_info.browser} on {device_info.os}",
                severity="medium",
                details={
                    "device_id": device_info.device_id,
                    "browser": device_info.browser,
                    "os": device_info.os,
                    "ip": device_info.ip,
                    "user_agent": device_info.user_agent,
                },
                timestamp=self._clock(),
            )
        )
        return NewDeviceResult(is_new_device=True, alert=alert)

    def record_failed_login(
        self, email: str, ip: str, user_agent: Optional[str] = None
    ) -> SecurityAlert:
        alert = self._emit(
            SecurityAlert(
                type=FAILED_ATTEMPT,
                user_id=email,
                message="Failed login attempt",
                severity="low",
                details={"ip": ip, "user_agent": user_agent or ""},
                timestamp=self._clock(),
            )
        )
        self.prune_older_than()
        return alert

    def check_suspicious_activity(
        self, user_id: str, ip: str, action: str = "login"
    ) -> Optional[SecurityAlert]:
        since = self._clock() - self.suspicious_window
        with self._alerts_lock:
            attempts = sum(
                1
                for alert in self.alerts
                if alert.type == FAILED_ATTEMPT
                and alert.details.get("ip") == ip
                and alert.timestamp > since
            )
        if attempts < self.suspicious_threshold:
            return None
        return self._emit(
            SecurityAlert(
                type=SUSPICIOUS_ACTIVITY,
                user_id=user_id,
                message=f"Suspicious {action} activity detected",
                severity="high",
                details={"ip": ip, "attempt_count": attempts, "action": action},
                timestamp=self._clock(),
            )
        )

    def prune_older_than(self, retention: Optional[timedelta] = None) -> int:
        cutoff = self._clock() - (retention or self.alert_retention)
        with self._alerts_lock:
            kept = [alert for alert in self.alerts if alert.timestamp >= cutoff]
            removed = len(self.alerts) - len(kept)
            self.alerts = kept
        if removed:
            logger.debug("security_alert_prune", removed=removed)
        return removed

    def get_user_alerts(self, user_id: str, limit: int = 10) -> List[SecurityAlert]:
        """Newest first."""
        with self._alerts_lock:
            mine = [alert for alert in self.alerts if alert.user_id == user_id]
        mine.sort(key=lambda alert: alert.timestamp, reverse=True)
        return mine[: max(0, limit)]

    def security_stats(self, user_id: str) -> dict:
        with self._alerts_lock:
            mine = [alert for alert in self.alerts if alert.user_id == user_id]
        day_ago = self._clock() - timedelta(days=1)
        return {
            "total_alerts": len(mine),
            "critical_alerts": sum(1 for a in mine if a.severity in {"high", "critical"}),
            "recent_alerts": sum(1 for a in mine if a.timestamp > day_ago),
            "last_alert": max((a.timestamp for a in mine), default=None),
        }
