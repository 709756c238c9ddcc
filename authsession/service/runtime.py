from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import redis.asyncio as aioredis

from authsession.config import get_settings, reset_settings_cache
from authsession.logging import get_logger
from authsession.service.anomaly import AnomalyDetector
from authsession.service.auth import AuthService
from authsession.service.revocation import RevocationRegistry
from authsession.service.scheduler import Scheduler
from authsession.service.sessions import SessionRegistry
from authsession.service.throttle import ThrottleGuard
from authsession.service.tokens import TokenCodec
from authsession.storage.memory import (
    MemoryCredentialStore,
    MemoryRevocationStore,
    MemorySessionStore,
    MemoryThrottleStore,
)
from authsession.storage.redis_cache import (
    RedisRevocationStore,
    RedisThrottleStore,
    connect,
    verify_connection,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired session subsystem for the FastAPI app."""

    def __init__(self):
        self.settings = settings = get_settings()
        logger.info("runtime_init_started", test_mode=settings.test_mode)

        self.redis: Optional[aioredis.Redis] = None
        redis_error: Exception | None = None
        if settings.redis_url:
            try:
                verify_connection(settings.redis_url)
                self.redis = connect(settings.redis_url)
            except Exception as exc:
                redis_error = exc
                self.redis = None
            if self.redis is None:
                if not settings.test_mode and not settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "Redis is configured but unreachable; start Redis, unset REDIS_URL, "
                        "or set ALLOW_REDIS_FALLBACK_DEV=true for in-memory fallback."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(settings.redis_url),
                    error=str(redis_error),
                    message="Revocation and throttle state is process-local and lost on restart.",
                )

        if self.redis is not None:
            revocation_store = RedisRevocationStore(self.redis)
            login_store = RedisThrottleStore(self.redis)
            register_store = RedisThrottleStore(self.redis)
        else:
            revocation_store = MemoryRevocationStore()
            login_store = MemoryThrottleStore()
            register_store = MemoryThrottleStore()

        self.credentials = MemoryCredentialStore()
        self.codec = TokenCodec(settings)
        self.revocation = RevocationRegistry(
            revocation_store, user_mark_ttl=settings.refresh_token_ttl
        )
        self.sessions = SessionRegistry(
            MemorySessionStore(),
            default_ttl=settings.session_ttl(remember_me=False),
            retention=settings.session_retention,
        )
        self.anomaly = AnomalyDetector(
            self.sessions,
            alert_retention=settings.alert_retention,
            suspicious_window=settings.suspicious_window,
            suspicious_threshold=settings.suspicious_attempt_threshold,
        )
        self.auth = AuthService(
            self.credentials,
            settings,
            codec=self.codec,
            revocation=self.revocation,
            sessions=self.sessions,
            login_throttle=ThrottleGuard(login_store, settings.login_throttle),
            register_throttle=ThrottleGuard(register_store, settings.register_throttle),
            anomaly=self.anomaly,
        )
        self.scheduler = Scheduler(tick_seconds=settings.scheduler_tick_seconds)
        self.auth.register_maintenance_jobs(self.scheduler)

        logger.info(
            "runtime_initialized",
            redis_enabled=self.redis is not None,
            access_token_ttl_minutes=settings.access_token_ttl_minutes,
            jobs=sorted(self.scheduler.jobs),
        )

    async def close(self) -> None:
        await self.scheduler.stop()
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
