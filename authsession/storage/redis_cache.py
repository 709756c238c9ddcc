from __future__ import annotations

import contextlib
import hashlib
import json
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from authsession.storage.errors import StoreUnavailableError
from authsession.storage.models import AttemptCounter, BlacklistEntry, UserRevocation


def connect(redis_url: str, *, socket_timeout: float = 5.0) -> aioredis.Redis:
    """Create an async client with explicit timeouts."""
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def verify_connection(redis_url: str) -> None:
    """Assert Redis connectivity before enabling dependent stores."""
    # Short-lived synchronous client so the async client is not bound to a
    # temporary event loop during startup checks.
    sync_client = Redis.from_url(redis_url, decode_responses=True)
    try:
        sync_client.ping()
    finally:
        sync_client.close()


def _ttl_seconds(expires_at: datetime) -> int:
    """Compute a Redis TTL from an absolute expiry, clamped to at least 1 second."""

    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))


def _parse_dt(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@contextlib.asynccontextmanager
async def _unavailable_on_error(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailableError(operation, {"error": str(exc)}) from exc


class RedisRevocationStore:
    """Blacklist entries and user revocation marks with native Redis expiry."""

    def __init__(self, client: aioredis.Redis, *, prefix: str = "auth:blacklist") -> None:
        self.client = client
        self.prefix = prefix

    def _entry_key(self, token_hash: str) -> str:
        return f"{self.prefix}:token:{token_hash}"

    def _mark_key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}"

    async def get_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        async with _unavailable_on_error("get_entry"):
            raw = await self.client.get(self._entry_key(token_hash))
        if not raw:
            return None
        data = json.loads(raw)
        return BlacklistEntry(
            token_hash=data["token_hash"],
            user_id=data.get("user_id"),
            expires_at=_parse_dt(data["expires_at"]),
            blacklisted_at=_parse_dt(data["blacklisted_at"]),
            reason=data.get("reason", "logout"),
        )

    async def put_entry(self, entry: BlacklistEntry) -> None:
        payload = json.dumps(
            {
                "token_hash": entry.token_hash,
                "user_id": entry.user_id,
                "expires_at": entry.expires_at.isoformat(),
                "blacklisted_at": entry.blacklisted_at.isoformat(),
                "reason": entry.reason,
            }
        )
        async with _unavailable_on_error("put_entry"):
            await self.client.set(
                self._entry_key(entry.token_hash), payload, ex=_ttl_seconds(entry.expires_at)
            )

    async def list_entries(self) -> List[BlacklistEntry]:
        entries: List[BlacklistEntry] = []
        async with _unavailable_on_error("list_entries"):
            keys = [key async for key in self.client.scan_iter(match=f"{self.prefix}:token:*")]
        for key in keys:
            entry = await self.get_entry(key.rsplit(":", 1)[-1])
            if entry is not None:
                entries.append(entry)
        return entries

    async def get_user_mark(self, user_id: str) -> Optional[UserRevocation]:
        async with _unavailable_on_error("get_user_mark"):
            raw = await self.client.get(self._mark_key(user_id))
        if not raw:
            return None
        data = json.loads(raw)
        return UserRevocation(
            user_id=user_id,
            revoked_before=_parse_dt(data["revoked_before"]),
            expires_at=_parse_dt(data["expires_at"]),
            reason=data.get("reason", "security"),
        )

    async def put_user_mark(self, mark: UserRevocation) -> None:
        payload = json.dumps(
            {
                "revoked_before": mark.revoked_before.isoformat(),
                "expires_at": mark.expires_at.isoformat(),
                "reason": mark.reason,
            }
        )
        async with _unavailable_on_error("put_user_mark"):
            await self.client.set(
                self._mark_key(mark.user_id), payload, ex=_ttl_seconds(mark.expires_at)
            )

    async def purge_expired(self, now: datetime) -> int:
        # Redis drops keys on their own TTL.
        return 0

    async def clear(self) -> None:
        async with _unavailable_on_error("clear"):
            keys = [key async for key in self.client.scan_iter(match=f"{self.prefix}:*")]
            if keys:
                await self.client.delete(*keys)


class RedisThrottleStore:
    """Attempt counters stored as JSON with a TTL matching the window reset."""

    def __init__(self, client: aioredis.Redis, *, prefix: str = "auth:throttle") -> None:
        self.client = client
        self.prefix = prefix

    def _key(self, subject_key: str) -> str:
        # Hash the subject so IPs or emails cannot inject delimiters.
        digest = hashlib.sha256(subject_key.encode()).hexdigest()
        return f"{self.prefix}:{digest}"

    async def get(self, subject_key: str) -> Optional[AttemptCounter]:
        async with _unavailable_on_error("throttle_get"):
            raw = await self.client.get(self._key(subject_key))
        if not raw:
            return None
        data = json.loads(raw)
        return AttemptCounter(
            subject_key=subject_key,
            count=int(data["count"]),
            window_reset_at=_parse_dt(data["window_reset_at"]),
        )

    async def put(self, counter: AttemptCounter) -> None:
        payload = json.dumps(
            {"count": counter.count, "window_reset_at": counter.window_reset_at.isoformat()}
        )
        async with _unavailable_on_error("throttle_put"):
            await self.client.set(
                self._key(counter.subject_key),
                payload,
                ex=_ttl_seconds(counter.window_reset_at),
            )

    async def delete(self, subject_key: str) -> None:
        async with _unavailable_on_error("throttle_delete"):
            await self.client.delete(self._key(subject_key))

    async def purge_expired(self, now: datetime) -> int:
        return 0
