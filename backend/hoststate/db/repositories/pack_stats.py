"""Scheduled-query stats reconciler.

Stats rows exist only for queries that actually executed on a host.
Reads fill in every other applicable scheduled query with zero metrics
and ``PAST_DATE`` so callers always get one entry per query.
"""

import logging
from typing import Sequence

from sqlalchemy import and_, select, union
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import (
    LabelMembership,
    Pack,
    PackTarget,
    Query,
    ScheduledQuery,
    ScheduledQueryStats,
)
from hoststate.db.repositories.packs import TARGET_HOST, TARGET_LABEL, TARGET_TEAM
from hoststate.db.sql import upsert
from hoststate.schemas.hosts import PAST_DATE
from hoststate.schemas.stats import PackStats
from hoststate.schemas.stats import ScheduledQueryStats as QueryStats

logger = logging.getLogger(__name__)

_METRIC_COLUMNS = (
    "average_memory",
    "denylisted",
    "executions",
    "schedule_interval",
    "last_executed",
    "output_size",
    "system_time",
    "user_time",
    "wall_time",
)


def platform_applies(query_platform: str | None, host_platform: str) -> bool:
    """A scheduled query's platform is a comma separated allow-list; empty means all."""
    if not query_platform:
        return True
    return host_platform in [p.strip() for p in query_platform.split(",")]


class PackStatsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def save_host_pack_stats(self, host_id: int, pack_stats: Sequence[PackStats]) -> None:
        """Upsert the reported stats; scheduled queries that no longer exist are skipped."""
        for pack in pack_stats:
            names = [s.scheduled_query_name for s in pack.query_stats]
            if not names:
                continue
            result = await self.session.execute(
                select(ScheduledQuery.name, ScheduledQuery.id)
                .join(Pack, Pack.id == ScheduledQuery.pack_id)
                .where(Pack.name == pack.pack_name, ScheduledQuery.name.in_(names))
            )
            sq_ids = {name: sq_id for name, sq_id in result.all()}

            rows = []
            for stats in pack.query_stats:
                sq_id = sq_ids.get(stats.scheduled_query_name)
                if sq_id is None:
                    logger.debug(
                        f"Host {host_id}: ignoring stats for unknown query "
                        f"{pack.pack_name}/{stats.scheduled_query_name}"
                    )
                    continue
                rows.append(
                    {
                        "host_id": host_id,
                        "scheduled_query_id": sq_id,
                        "average_memory": stats.average_memory,
                        "denylisted": stats.denylisted,
                        "executions": stats.executions,
                        "schedule_interval": stats.interval,
                        "last_executed": stats.last_executed,
                        "output_size": stats.output_size,
                        "system_time": stats.system_time,
                        "user_time": stats.user_time,
                        "wall_time": stats.wall_time,
                    }
                )
            # One statement per pack: each pack's stats land together or not at all.
            await upsert(
                self.session,
                ScheduledQueryStats,
                rows,
                index_elements=("host_id", "scheduled_query_id"),
                update_columns=_METRIC_COLUMNS,
            )

    async def applicable_pack_ids(self, host_id: int, team_id: int | None) -> list[int]:
        """Enabled packs that target the host by label, team or host id."""
        by_label = (
            select(PackTarget.pack_id)
            .join(
                LabelMembership,
                and_(
                    LabelMembership.label_id == PackTarget.target_id,
                    LabelMembership.host_id == host_id,
                ),
            )
            .where(PackTarget.target_type == TARGET_LABEL)
        )
        by_host = select(PackTarget.pack_id).where(
            PackTarget.target_type == TARGET_HOST, PackTarget.target_id == host_id
        )
        selects = [by_label, by_host]
        if team_id is not None:
            selects.append(
                select(PackTarget.pack_id).where(
                    PackTarget.target_type == TARGET_TEAM, PackTarget.target_id == team_id
                )
            )
        targeted = union(*selects).subquery()
        result = await self.session.execute(
            select(Pack.id)
            .where(Pack.id.in_(select(targeted.c.pack_id)), Pack.disabled.is_(False))
            .order_by(Pack.id)
        )
        return list(result.scalars().all())

    async def load_host_pack_stats(self, host) -> list[PackStats]:
        """One stats entry per scheduled query applicable to ``host``.

        ``host`` needs ``id``, ``platform`` and ``team_id``.
        """
        pack_ids = await self.applicable_pack_ids(host.id, host.team_id)
        if not pack_ids:
            return []

        result = await self.session.execute(
            select(
                Pack.id.label("pack_id"),
                Pack.name.label("pack_name"),
                ScheduledQuery.id.label("scheduled_query_id"),
                ScheduledQuery.name.label("scheduled_query_name"),
                ScheduledQuery.platform.label("platform"),
                ScheduledQuery.interval.label("interval"),
                Query.name.label("query_name"),
                Query.description.label("description"),
                ScheduledQueryStats.host_id.label("stats_host_id"),
                *(getattr(ScheduledQueryStats, col) for col in _METRIC_COLUMNS),
            )
            .select_from(ScheduledQuery)
            .join(Pack, Pack.id == ScheduledQuery.pack_id)
            .join(Query, Query.id == ScheduledQuery.query_id)
            .outerjoin(
                ScheduledQueryStats,
                and_(
                    ScheduledQueryStats.scheduled_query_id == ScheduledQuery.id,
                    ScheduledQueryStats.host_id == host.id,
                ),
            )
            .where(ScheduledQuery.pack_id.in_(pack_ids))
            .order_by(Pack.id, ScheduledQuery.id)
        )

        packs: dict[int, PackStats] = {}
        for row in result.all():
            if not platform_applies(row.platform, host.platform):
                continue
            pack = packs.setdefault(
                row.pack_id, PackStats(pack_id=row.pack_id, pack_name=row.pack_name)
            )
            stats = QueryStats(
                scheduled_query_name=row.scheduled_query_name,
                scheduled_query_id=row.scheduled_query_id,
                query_name=row.query_name,
                description=row.description or "",
                pack_name=row.pack_name,
                pack_id=row.pack_id,
                interval=row.interval or 0,
                last_executed=PAST_DATE,
            )
            if row.stats_host_id is not None:
                stats.average_memory = row.average_memory
                stats.denylisted = row.denylisted
                stats.executions = row.executions
                stats.last_executed = row.last_executed
                stats.output_size = row.output_size
                stats.system_time = row.system_time
                stats.user_time = row.user_time
                stats.wall_time = row.wall_time
            pack.query_stats.append(stats)
        return list(packs.values())
