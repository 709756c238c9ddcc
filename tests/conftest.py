import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authsession.config import Settings  # noqa: E402
from authsession.service.anomaly import AnomalyDetector  # noqa: E402
from authsession.service.auth import AuthService  # noqa: E402
from authsession.service.revocation import RevocationRegistry  # noqa: E402
from authsession.service.runtime import reset_runtime_for_tests  # noqa: E402
from authsession.service.scheduler import Scheduler  # noqa: E402
from authsession.service.sessions import SessionRegistry, extract_device_info  # noqa: E402
from authsession.service.throttle import ThrottleGuard  # noqa: E402
from authsession.service.tokens import TokenCodec  # noqa: E402
from authsession.storage.memory import (  # noqa: E402
    MemoryCredentialStore,
    MemoryRevocationStore,
    MemorySessionStore,
    MemoryThrottleStore,
)

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0"
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class FakeClock:
    """Deterministic replacement for the UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(jwt_secret=TEST_SECRET)


@pytest.fixture
def credential_store():
    # Cheap argon2 parameters keep the suite fast.
    return MemoryCredentialStore(
        hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def codec(settings, clock):
    return TokenCodec(settings, clock=clock)


@pytest.fixture
def revocation(settings, clock):
    return RevocationRegistry(
        MemoryRevocationStore(), user_mark_ttl=settings.refresh_token_ttl, clock=clock
    )


@pytest.fixture
def sessions(settings, clock):
    return SessionRegistry(
        MemorySessionStore(),
        default_ttl=settings.session_ttl(remember_me=False),
        retention=settings.session_retention,
        clock=clock,
    )


@pytest.fixture
def anomaly(sessions, settings, clock):
    return AnomalyDetector(
        sessions,
        clock=clock,
        alert_retention=settings.alert_retention,
        suspicious_window=settings.suspicious_window,
        suspicious_threshold=settings.suspicious_attempt_threshold,
    )


@pytest.fixture
def auth_service(credential_store, settings, codec, revocation, sessions, anomaly, clock):
    """AuthService wired to in-memory stores and the fake clock."""
    return AuthService(
        credential_store,
        settings,
        codec=codec,
        revocation=revocation,
        sessions=sessions,
        login_throttle=ThrottleGuard(MemoryThrottleStore(), settings.login_throttle, clock=clock),
        register_throttle=ThrottleGuard(
            MemoryThrottleStore(), settings.register_throttle, clock=clock
        ),
        anomaly=anomaly,
        clock=clock,
    )


@pytest.fixture
def scheduler(clock):
    return Scheduler(clock=clock, tick_seconds=0.01)


@pytest.fixture
def test_user(credential_store):
    """A registered user with password TestPassword123!"""
    return asyncio.run(credential_store.create_user("test@example.com", "TestPassword123!"))


@pytest.fixture
def device_a(clock):
    return extract_device_info(CHROME_WINDOWS, "10.0.0.1", now=clock())


@pytest.fixture
def device_b(clock):
    return extract_device_info(FIREFOX_LINUX, "10.0.0.2", now=clock())


@pytest.fixture
def device_c(clock):
    return extract_device_info(SAFARI_IPHONE, "10.0.0.3", now=clock())


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
