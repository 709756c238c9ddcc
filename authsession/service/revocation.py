from __future__ import annotations

import hashlib
from collections import Counter
from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from authsession.logging import get_logger
from authsession.storage.errors import StoreUnavailableError
from authsession.storage.models import (
    BLACKLIST_REASONS,
    BlacklistEntry,
    Clock,
    UserRevocation,
    utcnow,
)

logger = get_logger(__name__)


def token_fingerprint(token: str) -> str:
    """Blacklist key for a token; the bearer string itself is never stored."""
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationStore(Protocol):
    async def get_entry(self, token_hash: str) -> Optional[BlacklistEntry]: ...

    async def put_entry(self, entry: BlacklistEntry) -> None: ...

    async def list_entries(self) -> List[BlacklistEntry]: ...

    async def get_user_mark(self, user_id: str) -> Optional[UserRevocation]: ...

    async def put_user_mark(self, mark: UserRevocation) -> None: ...

    async def purge_expired(self, now: datetime) -> int: ...

    async def clear(self) -> None: ...


class RevocationRegistry:
    """Token blacklist with per-user revocation marks.

    Lookups fail closed: when the backing store is unavailable a token is
    reported as blacklisted so an outage forces re-authentication instead of
    accepting a token that may have been revoked.
    """

    def __init__(
        self,
        store: RevocationStore,
        *,
        user_mark_ttl: timedelta,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.user_mark_ttl = user_mark_ttl
        self._clock = clock

    async def blacklist(
        self,
        token: str,
        user_id: Optional[str],
        expires_at: datetime,
        reason: str = "logout",
    ) -> BlacklistEntry:
        if reason not in BLACKLIST_REASONS:
            raise ValueError(f"unknown blacklist reason: {reason}")
        token_hash = token_fingerprint(token)
        existing = await self.store.get_entry(token_hash)
        if existing is not None:
            return existing
        entry = BlacklistEntry(
            token_hash=token_hash,
            user_id=user_id,
            expires_at=expires_at,
            blacklisted_at=self._clock(),
            reason=reason,
        )
        await self.store.put_entry(entry)
        logger.info("token_blacklisted", user_id=user_id, reason=reason)
        return entry

    async def is_blacklisted(self, token: str) -> bool:
        try:
            entry = await self.store.get_entry(token_fingerprint(token))
        except StoreUnavailableError as exc:
            logger.warning(
                "check_blacklist_failed_defaulting_to_revoked",
                operation=exc.operation,
                error=str(exc),
            )
            return True
        return entry is not None

    async def blacklist_all(self, user_id: str, reason: str = "security") -> UserRevocation:
        """Revoke every token issued to ``user_id`` up to now."""
        now = self._clock()
        mark = UserRevocation(
            user_id=user_id,
            revoked_before=now,
            expires_at=now + self.user_mark_ttl,
            reason=reason,
        )
        await self.store.put_user_mark(mark)
        logger.info("user_tokens_revoked", user_id=user_id, reason=reason)
        return mark

    async def is_revoked_for_user(self, user_id: str, issued_at: Optional[datetime]) -> bool:
        try:
            mark = await self.store.get_user_mark(user_id)
        except StoreUnavailableError as exc:
            logger.warning(
                "check_user_revocation_failed_defaulting_to_revoked",
                user_id=user_id,
                error=str(exc),
            )
            return True
        if mark is None:
            return False
        if issued_at is None:
            return True
        return issued_at < mark.revoked_before

    async def sweep(self) -> int:
        """Drop entries whose token would have expired anyway."""
        removed = await self.store.purge_expired(self._clock())
        if removed:
            logger.debug("blacklist_sweep", removed=removed)
        return removed

    async def stats(self) -> dict:
        entries = await self.store.list_entries()
        by_reason = Counter(entry.reason for entry in entries)
        stamps = [entry.blacklisted_at for entry in entries]
        return {
            "total_blacklisted": len(entries),
            "by_reason": dict(by_reason),
            "oldest_entry": min(stamps) if stamps else None,
            "newest_entry": max(stamps) if stamps else None,
        }

    async def clear(self) -> None:
        await self.store.clear()
        logger.info("blacklist_cleared")
