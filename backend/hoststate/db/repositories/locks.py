"""Named leases so only one instance runs a periodic job at a time."""

import logging
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import Lock
from hoststate.db.sql import insert_ignore, utcnow

logger = logging.getLogger(__name__)


class LockRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def try_lock(
        self, name: str, owner: str, ttl: timedelta, now: datetime | None = None
    ) -> bool:
        """Take or renew the lease. Expired leases held by others are taken over."""
        now = now or utcnow()
        expires_at = now + ttl
        inserted = await insert_ignore(
            self.session,
            Lock,
            {"name": name, "owner": owner, "expires_at": expires_at},
            index_elements=("name",),
        )
        if inserted:
            return True

        result = await self.session.execute(
            update(Lock)
            .where(Lock.name == name, or_(Lock.owner == owner, Lock.expires_at < now))
            .values(owner=owner, expires_at=expires_at)
        )
        acquired = bool(result.rowcount)
        if not acquired:
            logger.debug(f"Lock {name} is held by another owner")
        return acquired

    async def unlock(self, name: str, owner: str) -> None:
        await self.session.execute(delete(Lock).where(Lock.name == name, Lock.owner == owner))
