"""Seen-time tracker: batched "last seen" updates.

Check-ins land in ``host_seen_times`` so that frequent pings never touch
the ``hosts`` row. A host without a row reports its creation time.
"""

import logging
from datetime import datetime
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.config import settings
from hoststate.db.models import Host, HostSeenTime
from hoststate.db.queries import seen_time_expr
from hoststate.db.sql import chunked, upsert

logger = logging.getLogger(__name__)


class SeenTimeRepository:
    def __init__(self, session: AsyncSession, batch_size: int | None = None):
        self.session = session
        self.batch_size = batch_size or settings.SEEN_TIME_BATCH_SIZE

    async def mark_hosts_seen(self, host_ids: Sequence[int], seen_time: datetime) -> None:
        """Set the seen time of every host in ``host_ids``; the last write wins."""
        ids = sorted(set(host_ids))
        for batch in chunked(ids, self.batch_size):
            await upsert(
                self.session,
                HostSeenTime,
                [{"host_id": host_id, "seen_time": seen_time} for host_id in batch],
                index_elements=("host_id",),
                update_columns=("seen_time",),
            )
        if ids:
            logger.debug(f"Marked {len(ids)} hosts seen at {seen_time.isoformat()}")

    async def seen_time(self, host_id: int) -> datetime | None:
        """Effective seen time of a host, or None if the host does not exist."""
        result = await self.session.execute(
            select(seen_time_expr)
            .select_from(Host)
            .outerjoin(HostSeenTime, HostSeenTime.host_id == Host.id)
            .where(Host.id == host_id)
        )
        return result.scalar_one_or_none()
