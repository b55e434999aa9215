"""Periodic jobs: rollup aggregation and host cleanups.

Every cycle takes a named lock in the database first, so with several
instances running only one of them does the work; the others skip the
cycle.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hoststate.config import settings
from hoststate.db.repositories.aggregates import AggregatesRepository
from hoststate.db.repositories.lifecycle import LifecycleRepository
from hoststate.db.repositories.locks import LockRepository
from hoststate.db.sql import utcnow

logger = logging.getLogger(__name__)

JobFunc = Callable[[AsyncSession, datetime], Awaitable[Any]]


@dataclass
class PeriodicJob:
    name: str
    interval: float
    func: JobFunc
    runs: int = 0
    skipped: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "interval": self.interval,
            "runs": self.runs,
            "skipped": self.skipped,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


class Scheduler:
    """Runs registered jobs on their interval in background tasks."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        owner: str | None = None,
        lock_ttl: timedelta | None = None,
    ):
        if session_factory is None:
            from hoststate.db import async_session_factory as session_factory
        self._session_factory = session_factory
        self.owner = owner or settings.INSTANCE_ID
        self.lock_ttl = lock_ttl or timedelta(seconds=settings.LOCK_TTL_SECONDS)
        self._jobs: dict[str, PeriodicJob] = {}
        self._tasks: list[asyncio.Task] = []
        self._started = False

    @property
    def jobs(self) -> dict[str, PeriodicJob]:
        return self._jobs

    def register(self, name: str, interval: float, func: JobFunc) -> PeriodicJob:
        job = PeriodicJob(name=name, interval=interval, func=func)
        self._jobs[name] = job
        logger.info(f"Registered periodic job {name} every {interval}s")
        return job

    async def run_job(self, name: str, now: datetime | None = None) -> bool:
        """Run one cycle of ``name``. Returns False when another owner holds the lock."""
        job = self._jobs[name]
        now = now or utcnow()

        async with self._session_factory() as session:
            locks = LockRepository(session)
            acquired = await locks.try_lock(name, self.owner, self.lock_ttl, now=now)
            await session.commit()
            if not acquired:
                job.skipped += 1
                logger.info(f"Skipping {name}: lock held by another instance")
                return False

            try:
                await job.func(session, now)
                await session.commit()
                job.last_error = None
            except Exception as e:
                await session.rollback()
                job.last_error = str(e)
                logger.exception(f"Periodic job {name} failed")
            finally:
                await locks.unlock(name, self.owner)
                await session.commit()

        job.runs += 1
        job.last_run_at = now
        return True

    async def _loop(self, job: PeriodicJob):
        interval = max(1.0, job.interval)
        while self._started:
            await self.run_job(job.name)
            await asyncio.sleep(interval)

    async def start(self):
        if self._started:
            return
        self._started = True
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job)))
        logger.info(f"Scheduler started with {len(self._jobs)} jobs")

    async def stop(self):
        self._started = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Scheduler stopped")


# ── Jobs ──────────────────────────────────────────────────────────────


async def aggregate_stats(session: AsyncSession, now: datetime) -> None:
    aggregates = AggregatesRepository(session)
    await aggregates.generate_aggregated_munki_and_mdm(now)
    await aggregates.update_os_versions(now)
    await aggregates.increment_policy_violation_days(now)


async def cleanup_hosts(session: AsyncSession, now: datetime) -> None:
    lifecycle = LifecycleRepository(session)
    await lifecycle.cleanup_incoming_hosts(now)
    await lifecycle.cleanup_expired_hosts(now)


def build_scheduler(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    owner: str | None = None,
) -> Scheduler:
    scheduler = Scheduler(session_factory=session_factory, owner=owner)
    scheduler.register("aggregated_stats", settings.AGGREGATION_INTERVAL_SECONDS, aggregate_stats)
    scheduler.register("host_cleanups", settings.CLEANUP_INTERVAL_SECONDS, cleanup_hosts)
    return scheduler
