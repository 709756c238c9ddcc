from datetime import timedelta

import pytest

from authsession.service.anomaly import FAILED_ATTEMPT, NEW_LOGIN, SUSPICIOUS_ACTIVITY
from authsession.service.sessions import extract_device_info
from authsession.storage.models import SecurityAlert


class TestNewDevice:
    async def test_first_session_is_baseline(self, anomaly, sessions, device_a):
        session = await sessions.create("u1", device_a, "r1")
        result = await anomaly.check_new_device(
            "u1", device_a, exclude_session_id=session.session_id
        )
        assert not result.is_new_device
        assert result.alert is None
        assert anomaly.alerts == []

    async def test_unknown_device_alerts(self, anomaly, sessions, device_a, device_b):
        await sessions.create("u1", device_a, "r1")
        result = await anomaly.check_new_device("u1", device_b)
        assert result.is_new_device
        assert result.alert.type == NEW_LOGIN
        assert result.alert.severity == "medium"
        assert result.alert.details["browser"] == "Firefox"
        assert result.alert.details["ip"] == device_b.ip

    async def test_known_device_by_user_agent(self, anomaly, sessions, device_a, clock):
        await sessions.create("u1", device_a, "r1")
        roaming = extract_device_info(device_a.user_agent, "172.16.0.9", now=clock())
        assert not (await anomaly.check_new_device("u1", roaming)).is_new_device

    async def test_inactive_sessions_are_not_known_devices(
        self, anomaly, sessions, device_a, device_b
    ):
        await sessions.create("u1", device_a, "r1")
        old = await sessions.create("u1", device_b, "r2")
        await sessions.invalidate(old.session_id)
        assert (await anomaly.check_new_device("u1", device_b)).is_new_device


class TestFailedAttempts:
    def test_record_failed_login(self, anomaly):
        alert = anomaly.record_failed_login("a@example.com", "10.0.0.9", "curl/8")
        assert alert.type == FAILED_ATTEMPT
        assert alert.severity == "low"
        assert alert.details == {"ip": "10.0.0.9", "user_agent": "curl/8"}

    def test_suspicious_after_threshold(self, anomaly):
        for _ in range(2):
            anomaly.record_failed_login("a@example.com", "10.0.0.9")
        assert anomaly.check_suspicious_activity("a@example.com", "10.0.0.9") is None

        anomaly.record_failed_login("a@example.com", "10.0.0.9")
        alert = anomaly.check_suspicious_activity("a@example.com", "10.0.0.9")
        assert alert.type == SUSPICIOUS_ACTIVITY
        assert alert.severity == "high"
        assert alert.details["attempt_count"] == 3

    def test_other_ips_do_not_count(self, anomaly):
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            anomaly.record_failed_login("a@example.com", ip)
        assert anomaly.check_suspicious_activity("a@example.com", "10.0.0.1") is None

    def test_attempts_outside_window_ignored(self, anomaly, clock):
        for _ in range(3):
            anomaly.record_failed_login("a@example.com", "10.0.0.9")
        clock.advance(hours=1, seconds=1)
        assert anomaly.check_suspicious_activity("a@example.com", "10.0.0.9") is None


class TestAlertRetention:
    def test_prune(self, anomaly, clock):
        anomaly.record_failed_login("a@example.com", "10.0.0.9")
        clock.advance(days=8)
        assert anomaly.prune_older_than() == 1
        assert anomaly.alerts == []

    def test_prune_with_explicit_retention(self, anomaly, clock):
        anomaly.record_failed_login("a@example.com", "10.0.0.9")
        clock.advance(hours=2)
        assert anomaly.prune_older_than(timedelta(hours=1)) == 1

    def test_user_alerts_newest_first(self, anomaly, clock):
        first = anomaly.record_failed_login("a@example.com", "10.0.0.9")
        clock.advance(minutes=1)
        second = anomaly.record_failed_login("a@example.com", "10.0.0.9")
        anomaly.record_failed_login("b@example.com", "10.0.0.9")
        assert anomaly.get_user_alerts("a@example.com") == [second, first]
        assert anomaly.get_user_alerts("a@example.com", limit=1) == [second]

    def test_security_stats(self, anomaly, clock):
        for _ in range(3):
            anomaly.record_failed_login("a@example.com", "10.0.0.9")
        anomaly.check_suspicious_activity("a@example.com", "10.0.0.9")
        clock.advance(days=2)
        stats = anomaly.security_stats("a@example.com")
        assert stats["total_alerts"] == 4
        assert stats["critical_alerts"] == 1
        assert stats["recent_alerts"] == 0
        assert stats["last_alert"] == clock() - timedelta(days=2)


class TestAlertValidation:
    @pytest.mark.parametrize(
        "alert_type,severity",
        [("password_changed", "low"), (NEW_LOGIN, "urgent")],
    )
    def test_unknown_type_or_severity_rejected(self, anomaly, alert_type, severity):
        alert = SecurityAlert(type=alert_type, user_id="u1", message="x", severity=severity)
        with pytest.raises(ValueError):
            anomaly._emit(alert)
        assert anomaly.alerts == []
