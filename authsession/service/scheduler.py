"""Periodic maintenance jobs.

Jobs are plain callables (sync or async) registered with an interval. The
scheduler can run them from a background task (:meth:`Scheduler.start`) or be
ticked by hand with :meth:`Scheduler.run_pending`, which is how tests drive
sweeps deterministically against an injected clock.
"""

from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from authsession.logging import get_logger
from authsession.storage.models import Clock, utcnow

logger = get_logger(__name__)

DEFAULT_TICK_SECONDS = 1.0


@dataclass
class ScheduledJob:
    name: str
    interval: timedelta
    func: Callable[[], Any]
    next_run: datetime
    runs: int = 0
    failures: int = 0
    last_result: Any = None


class Scheduler:
    def __init__(
        self, *, clock: Clock = utcnow, tick_seconds: float = DEFAULT_TICK_SECONDS
    ) -> None:
        self._clock = clock
        self.tick_seconds = tick_seconds
        self.jobs: Dict[str, ScheduledJob] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def add_job(
        self,
        name: str,
        interval_seconds: float,
        func: Callable[[], Any],
        *,
        run_immediately: bool = False,
    ) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        interval = timedelta(seconds=interval_seconds)
        now = self._clock()
        job = ScheduledJob(
            name=name,
            interval=interval,
            func=func,
            next_run=now if run_immediately else now + interval,
        )
        self.jobs[name] = job
        return job

    def remove_job(self, name: str) -> None:
        self.jobs.pop(name, None)

    async def _run_job(self, job: ScheduledJob) -> None:
        try:
            result = job.func()
            if inspect.isawaitable(result):
                result = await result
            job.last_result = result
            job.runs += 1
        except Exception as exc:
            job.failures += 1
            logger.error(
                "scheduled_job_failed",
                job=job.name,
                error=str(exc),
                error_type=type(exc).__name__,
                failures=job.failures,
            )

    async def run_pending(self) -> List[str]:
        """Run every job that is due. Returns the names of the jobs run."""
        now = self._clock()
        ran = []
        for job in list(self.jobs.values()):
            if job.next_run > now:
                continue
            await self._run_job(job)
            job.next_run = now + job.interval
            ran.append(job.name)
        return ran

    async def run_all(self) -> List[str]:
        """Run every job now regardless of schedule."""
        now = self._clock()
        for job in list(self.jobs.values()):
            await self._run_job(job)
            job.next_run = now + job.interval
        return list(self.jobs)

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("scheduler_already_running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("scheduler_started", jobs=sorted(self.jobs), tick_seconds=self.tick_seconds)

    async def stop(self) -> None:
        """Stop the background loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("scheduler_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            await self.run_pending()
            await asyncio.sleep(self.tick_seconds)
