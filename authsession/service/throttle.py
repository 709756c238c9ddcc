from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from authsession.config import ThrottlePolicy
from authsession.logging import get_logger
from authsession.storage.errors import StoreUnavailableError
from authsession.storage.models import AttemptCounter, Clock, utcnow

logger = get_logger(__name__)

# Retry hint returned while the attempt store cannot be read
OUTAGE_RETRY_AFTER_SECONDS = 30


class ThrottleStore(Protocol):
    async def get(self, subject_key: str) -> Optional[AttemptCounter]: ...

    async def put(self, counter: AttemptCounter) -> None: ...

    async def delete(self, subject_key: str) -> None: ...

    async def purge_expired(self, now: datetime) -> int: ...


@dataclass
class ThrottleDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0


class ThrottleGuard:
    """Fixed-window attempt counter for one policy (login, register, ...).

    Checks fail closed: an unreadable store throttles the attempt. Recording
    fails open, so a lost increment never blocks the caller.
    """

    def __init__(
        self, store: ThrottleStore, policy: ThrottlePolicy, *, clock: Clock = utcnow
    ) -> None:
        self.store = store
        self.policy = policy
        self._clock = clock

    def _key(self, subject_key: str) -> str:
        return f"{self.policy.name}:{subject_key}"

    async def check(self, subject_key: str) -> ThrottleDecision:
        """Decide whether another attempt is allowed. Does not count the attempt."""
        key = self._key(subject_key)
        now = self._clock()
        try:
            counter = await self.store.get(key)
            if counter is not None and counter.window_reset_at <= now:
                await self.store.delete(key)
                counter = None
        except StoreUnavailableError as exc:
            logger.warning(
                "throttle_check_failed_defaulting_to_throttled",
                policy=self.policy.name,
                operation=exc.operation,
                error=str(exc),
            )
            return ThrottleDecision(allowed=False, retry_after_seconds=OUTAGE_RETRY_AFTER_SECONDS)
        if counter is None:
            return ThrottleDecision(allowed=True, remaining=self.policy.max_attempts)
        if counter.count >= self.policy.max_attempts:
            retry_after = math.ceil((counter.window_reset_at - now).total_seconds())
            return ThrottleDecision(allowed=False, retry_after_seconds=max(1, retry_after))
        return ThrottleDecision(
            allowed=True, remaining=self.policy.max_attempts - counter.count
        )

    async def record(self, subject_key: str, success: bool) -> Optional[AttemptCounter]:
        try:
            return await self._record(self._key(subject_key), success)
        except StoreUnavailableError as exc:
            logger.warning(
                "throttle_record_failed",
                policy=self.policy.name,
                operation=exc.operation,
                error=str(exc),
            )
            return None

    async def _record(self, key: str, success: bool) -> Optional[AttemptCounter]:
        if success and self.policy.reset_on_success:
            await self.store.delete(key)
            return None
        now = self._clock()
        counter = await self.store.get(key)
        if counter is None or counter.window_reset_at <= now:
            counter = AttemptCounter(
                subject_key=key, count=1, window_reset_at=now + self.policy.window
            )
        else:
            counter = AttemptCounter(
                subject_key=key,
                count=min(counter.count + 1, self.policy.max_attempts),
                window_reset_at=counter.window_reset_at,
            )
        await self.store.put(counter)
        if counter.count >= self.policy.max_attempts:
            logger.warning(
                "throttle_limit_reached",
                policy=self.policy.name,
                window_reset_at=counter.window_reset_at.isoformat(),
            )
        return counter

    async def reset(self, subject_key: str) -> None:
        await self.store.delete(self._key(subject_key))

    async def sweep(self) -> int:
        removed = await self.store.purge_expired(self._clock())
        if removed:
            logger.debug("throttle_sweep", policy=self.policy.name, removed=removed)
        return removed
