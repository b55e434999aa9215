"""Pack repository: packs, queries and scheduled queries.

A pack reaches hosts through its targets: a label (hosts that are
members), a team (hosts on that team) or an explicit host id. The
"Global" pack targets the built-in "All Hosts" label; each team gets a
"Team: <name>" pack targeting the team.
"""

import logging
from typing import Iterable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import (
    Pack,
    PackTarget,
    Query,
    ScheduledQuery,
    ScheduledQueryStats,
    Team,
)
from hoststate.db.repositories.labels import LabelRepository
from hoststate.errors import NotFoundError, translate_store_errors

logger = logging.getLogger(__name__)

GLOBAL_PACK_NAME = "Global"
GLOBAL_PACK_TYPE = "global"

TARGET_LABEL = "label"
TARGET_HOST = "host"
TARGET_TEAM = "team"


def team_pack_type(team_id: int) -> str:
    return f"team-{team_id}"


def team_pack_name(team_name: str) -> str:
    return f"Team: {team_name}"


async def purge_packs(session: AsyncSession, pack_ids: Sequence[int]) -> None:
    """Remove packs with their targets, scheduled queries and collected stats."""
    if not pack_ids:
        return
    sq_ids = select(ScheduledQuery.id).where(ScheduledQuery.pack_id.in_(pack_ids))
    await session.execute(
        delete(ScheduledQueryStats).where(ScheduledQueryStats.scheduled_query_id.in_(sq_ids))
    )
    await session.execute(delete(ScheduledQuery).where(ScheduledQuery.pack_id.in_(pack_ids)))
    await session.execute(delete(PackTarget).where(PackTarget.pack_id.in_(pack_ids)))
    await session.execute(delete(Pack).where(Pack.id.in_(pack_ids)))


class PackRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Queries ───────────────────────────────────────────────────────

    async def new_query(self, name: str, query: str, description: str = "") -> Query:
        q = Query(name=name, query=query, description=description)
        with translate_store_errors():
            self.session.add(q)
            await self.session.flush()
        return q

    # ── Packs ─────────────────────────────────────────────────────────

    async def new_pack(
        self,
        name: str,
        description: str = "",
        platform: str = "",
        host_ids: Iterable[int] = (),
        label_ids: Iterable[int] = (),
        team_ids: Iterable[int] = (),
        pack_type: str | None = None,
        disabled: bool = False,
    ) -> Pack:
        pack = Pack(
            name=name,
            description=description,
            platform=platform,
            pack_type=pack_type,
            disabled=disabled,
        )
        with translate_store_errors():
            self.session.add(pack)
            await self.session.flush()
            targets = (
                [PackTarget(pack_id=pack.id, target_type=TARGET_HOST, target_id=i) for i in host_ids]
                + [PackTarget(pack_id=pack.id, target_type=TARGET_LABEL, target_id=i) for i in label_ids]
                + [PackTarget(pack_id=pack.id, target_type=TARGET_TEAM, target_id=i) for i in team_ids]
            )
            self.session.add_all(targets)
            await self.session.flush()
        return pack

    async def get_pack(self, pack_id: int) -> Pack:
        result = await self.session.execute(select(Pack).where(Pack.id == pack_id))
        pack = result.scalar_one_or_none()
        if pack is None:
            raise NotFoundError("pack", pack_id)
        return pack

    async def get_pack_by_type(self, pack_type: str) -> Pack | None:
        result = await self.session.execute(select(Pack).where(Pack.pack_type == pack_type))
        return result.scalar_one_or_none()

    async def ensure_global_pack(self) -> Pack:
        pack = await self.get_pack_by_type(GLOBAL_PACK_TYPE)
        if pack is not None:
            return pack

        label = await LabelRepository(self.session).ensure_builtin_labels()
        return await self.new_pack(
            GLOBAL_PACK_NAME,
            description="Global pack",
            label_ids=[label.id],
            pack_type=GLOBAL_PACK_TYPE,
        )

    async def ensure_team_pack(self, team_id: int) -> Pack:
        pack = await self.get_pack_by_type(team_pack_type(team_id))
        if pack is not None:
            return pack

        result = await self.session.execute(select(Team).where(Team.id == team_id))
        team = result.scalar_one_or_none()
        if team is None:
            raise NotFoundError("team", team_id)
        return await self.new_pack(
            team_pack_name(team.name),
            description="Schedule additional queries for all hosts assigned to this team.",
            team_ids=[team_id],
            pack_type=team_pack_type(team_id),
        )

    async def delete_pack(self, pack_id: int) -> None:
        await self.get_pack(pack_id)
        await purge_packs(self.session, [pack_id])
        await self.session.flush()

    # ── Scheduled queries ─────────────────────────────────────────────

    async def new_scheduled_query(
        self,
        pack_id: int,
        query_id: int,
        interval: int,
        name: str | None = None,
        platform: str | None = "",
        snapshot: bool | None = None,
        removed: bool | None = None,
        denylist: bool | None = None,
        version: str | None = "",
        shard: int | None = None,
    ) -> ScheduledQuery:
        if name is None:
            result = await self.session.execute(select(Query.name).where(Query.id == query_id))
            name = result.scalar_one_or_none()
            if name is None:
                raise NotFoundError("query", query_id)
        sq = ScheduledQuery(
            pack_id=pack_id,
            query_id=query_id,
            name=name,
            interval=interval,
            platform=platform,
            snapshot=snapshot,
            removed=removed,
            denylist=denylist,
            version=version,
            shard=shard,
        )
        with translate_store_errors():
            self.session.add(sq)
            await self.session.flush()
        return sq

    async def delete_scheduled_query(self, scheduled_query_id: int) -> None:
        await self.session.execute(
            delete(ScheduledQueryStats).where(
                ScheduledQueryStats.scheduled_query_id == scheduled_query_id
            )
        )
        result = await self.session.execute(
            delete(ScheduledQuery).where(ScheduledQuery.id == scheduled_query_id)
        )
        if not result.rowcount:
            raise NotFoundError("scheduled query", scheduled_query_id)
