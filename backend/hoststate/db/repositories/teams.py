"""Team repository: teams partition hosts for access control."""

import logging
from typing import Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import Host, Pack, Policy, PolicyMembership, Team
from hoststate.db.repositories.packs import purge_packs, team_pack_type
from hoststate.errors import NotFoundError, translate_store_errors

logger = logging.getLogger(__name__)


class TeamRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def new_team(self, name: str, description: str = "") -> Team:
        team = Team(name=name, description=description)
        with translate_store_errors():
            self.session.add(team)
            await self.session.flush()
        return team

    async def get_team(self, team_id: int) -> Team:
        result = await self.session.execute(select(Team).where(Team.id == team_id))
        team = result.scalar_one_or_none()
        if team is None:
            raise NotFoundError("team", team_id)
        return team

    async def list_teams(self) -> Sequence[Team]:
        result = await self.session.execute(select(Team).order_by(Team.id))
        return result.scalars().all()

    async def list_team_ids(self) -> list[int]:
        result = await self.session.execute(select(Team.id).order_by(Team.id))
        return list(result.scalars().all())

    async def delete_team(self, team_id: int) -> None:
        """Delete a team; its hosts move to "no team", its pack and policies go."""
        await self.get_team(team_id)
        await self.session.execute(
            update(Host).where(Host.team_id == team_id).values(team_id=None)
        )

        result = await self.session.execute(
            select(Pack.id).where(Pack.pack_type == team_pack_type(team_id))
        )
        await purge_packs(self.session, list(result.scalars().all()))

        policy_ids = select(Policy.id).where(Policy.team_id == team_id)
        await self.session.execute(
            delete(PolicyMembership).where(PolicyMembership.policy_id.in_(policy_ids))
        )
        await self.session.execute(delete(Policy).where(Policy.team_id == team_id))

        await self.session.execute(delete(Team).where(Team.id == team_id))
        await self.session.flush()
        logger.info(f"Deleted team {team_id}")
