from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from authsession.logging import get_logger
from authsession.storage.models import Clock, DeviceInfo, Session, utcnow

logger = get_logger(__name__)

# Checked in order; Edge and Opera user agents also mention Chrome/Safari, and
# iOS user agents mention Mac OS X.
_BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Opera", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)
_OPERATING_SYSTEMS = (
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("iOS", "iOS"),
    ("Windows", "Windows"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)


def parse_user_agent(user_agent: Optional[str]) -> tuple[str, str]:
    """Best-effort (browser, os) from a User-Agent header."""
    ua = user_agent or ""
    browser = next((name for marker, name in _BROWSERS if marker in ua), "Unknown")
    os_name = next((name for marker, name in _OPERATING_SYSTEMS if marker in ua), "Unknown")
    return browser, os_name


def extract_device_info(
    user_agent: Optional[str], ip: Optional[str], *, now: Optional[datetime] = None
) -> DeviceInfo:
    browser, os_name = parse_user_agent(user_agent)
    now = now or utcnow()
    return DeviceInfo(
        device_id=str(uuid.uuid4()),
        user_agent=user_agent or "",
        ip=ip or "",
        browser=browser,
        os=os_name,
        created_at=now,
        last_activity=now,
    )


class SessionStore(Protocol):
    async def add(self, session: Session) -> None: ...

    async def save(self, session: Session) -> None: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    async def list_for_user(self, user_id: str) -> List[Session]: ...

    async def list_all(self) -> List[Session]: ...

    async def delete(self, session_id: str) -> None: ...


class SessionRegistry:
    """Per-device login sessions.

    Sessions move one way, active to invalidated. Invalidated sessions stay
    queryable for ``retention`` and are then purged by :meth:`sweep_expired`.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        default_ttl: timedelta,
        retention: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.default_ttl = default_ttl
        self.retention = retention
        self._clock = clock

    async def create(
        self,
        user_id: str,
        device_info: DeviceInfo,
        refresh_token: str,
        *,
        ttl: Optional[timedelta] = None,
    ) -> Session:
        now = self._clock()
        device_info.last_activity = now
        session = Session.new(
            user_id, device_info, refresh_token, ttl=ttl or self.default_ttl, now=now
        )
        await self.store.add(session)
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.session_id,
            browser=device_info.browser,
            os=device_info.os,
        )
        return session

    async def get(self, session_id: str) -> Optional[Session]:
        return await self.store.get(session_id)

    async def find_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        """Active, unexpired session bound to ``refresh_token``."""
        session = await self.store.find_by_refresh_token(refresh_token)
        if session is None or not session.is_live(self._clock()):
            return None
        return session

    async def list_active(self, user_id: str) -> List[Session]:
        now = self._clock()
        return [s for s in await self.store.list_for_user(user_id) if s.is_live(now)]

    async def list_all(self, user_id: str) -> List[Session]:
        return await self.store.list_for_user(user_id)

    async def _deactivate(self, session: Session, reason: str) -> Session:
        session.is_active = False
        session.invalidated_at = self._clock()
        session.invalidation_reason = reason
        await self.store.save(session)
        logger.info(
            "session_invalidated",
            user_id=session.user_id,
            session_id=session.session_id,
            reason=reason,
        )
        return session

    async def invalidate(self, session_id: str, reason: str = "logout") -> Optional[Session]:
        session = await self.store.get(session_id)
        if session is None or not session.is_active:
            return None
        return await self._deactivate(session, reason)

    async def invalidate_by_refresh_token(
        self, refresh_token: str, reason: str = "logout"
    ) -> Optional[Session]:
        session = await self.store.find_by_refresh_token(refresh_token)
        if session is None or not session.is_active:
            return None
        return await self._deactivate(session, reason)

    async def invalidate_all(self, user_id: str, reason: str = "logout_all") -> List[Session]:
        affected = []
        for session in await self.store.list_for_user(user_id):
            if session.is_active:
                affected.append(await self._deactivate(session, reason))
        return affected

    async def invalidate_others(
        self, user_id: str, keep_session_id: str, reason: str = "logout_others"
    ) -> List[Session]:
        affected = []
        for session in await self.store.list_for_user(user_id):
            if session.is_active and session.session_id != keep_session_id:
                affected.append(await self._deactivate(session, reason))
        return affected

    async def rotate_refresh_token(self, session_id: str, refresh_token: str) -> Session:
        session = await self.store.get(session_id)
        if session is None:
            raise KeyError(session_id)
        session.refresh_token = refresh_token
        session.device_info.last_activity = self._clock()
        await self.store.save(session)
        return session

    async def touch(self, session_id: str) -> None:
        session = await self.store.get(session_id)
        if session is None or not session.is_active:
            return
        session.device_info.last_activity = self._clock()
        await self.store.save(session)

    async def stats(self, user_id: str) -> dict:
        active = await self.list_active(user_id)
        return {
            "active_sessions": len(active),
            "total_devices": len({s.device_info.fingerprint for s in active}),
            "last_activity": max(
                (s.device_info.last_activity for s in active), default=None
            ),
        }

    async def sweep_expired(self) -> int:
        """Deactivate sessions past expiry and purge stale invalidated ones.

        Returns the number of sessions changed or removed.
        """
        now = self._clock()
        purge_before = now - self.retention
        changed = 0
        for session in await self.store.list_all():
            if session.is_active:
                if session.expires_at <= now:
                    await self._deactivate(session, "expired")
                    changed += 1
                continue
            ended_at = session.invalidated_at or session.expires_at
            if ended_at <= purge_before:
                await self.store.delete(session.session_id)
                changed += 1
        if changed:
            logger.debug("session_sweep", changed=changed)
        return changed
