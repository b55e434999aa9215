"""Host lifecycle: cascading deletion and periodic cleanup."""

import logging
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.config import settings
from hoststate.db.models import HOST_REFS, Host, HostSeenTime
from hoststate.db.queries import seen_time_expr
from hoststate.db.sql import chunked
from hoststate.errors import NotFoundError, translate_store_errors

logger = logging.getLogger(__name__)

# Hosts that never sent details are removed once they are this old.
INCOMING_HOST_GRACE = timedelta(minutes=5)

_DELETE_BATCH_SIZE = 500


class LifecycleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def delete_hosts(self, host_ids: Sequence[int]) -> None:
        """Delete hosts and every per-host row referencing them.

        Runs inside the caller's transaction; a failure leaves no host
        half-deleted once the caller rolls back.
        """
        ids = sorted(set(host_ids))
        with translate_store_errors():
            for batch in chunked(ids, _DELETE_BATCH_SIZE):
                for model in HOST_REFS:
                    await self.session.execute(delete(model).where(model.host_id.in_(batch)))
                await self.session.execute(delete(Host).where(Host.id.in_(batch)))
        if ids:
            logger.info(f"Deleted {len(ids)} hosts")

    async def delete_host(self, host_id: int) -> None:
        result = await self.session.execute(select(Host.id).where(Host.id == host_id))
        if result.scalar_one_or_none() is None:
            raise NotFoundError("host", host_id)
        await self.delete_hosts([host_id])

    async def cleanup_incoming_hosts(self, now: datetime) -> list[int]:
        """Delete hosts that never reported details and are past the grace period."""
        result = await self.session.execute(
            select(Host.id)
            .where(
                or_(Host.hostname == "", Host.osquery_version == ""),
                Host.created_at < now - INCOMING_HOST_GRACE,
            )
            .order_by(Host.id)
        )
        ids = list(result.scalars().all())
        await self.delete_hosts(ids)
        if ids:
            logger.info(f"Cleaned up {len(ids)} incoming hosts")
        return ids

    async def cleanup_expired_hosts(
        self,
        now: datetime,
        enabled: bool | None = None,
        window_days: int | None = None,
    ) -> list[int]:
        """Delete hosts unseen for longer than the expiry window, if expiry is enabled."""
        if enabled is None:
            enabled = settings.HOST_EXPIRY_ENABLED
        if not enabled:
            return []
        if window_days is None:
            window_days = settings.HOST_EXPIRY_WINDOW_DAYS

        result = await self.session.execute(
            select(Host.id)
            .outerjoin(HostSeenTime, HostSeenTime.host_id == Host.id)
            .where(seen_time_expr < now - timedelta(days=window_days))
            .order_by(Host.id)
        )
        ids = list(result.scalars().all())
        await self.delete_hosts(ids)
        if ids:
            logger.info(f"Expired {len(ids)} hosts unseen for {window_days} days")
        return ids
