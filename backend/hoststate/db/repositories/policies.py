"""Policy repository: compliance policies and per-host responses.

A response of ``None`` means the policy has not reported yet or errored
on the host; only an explicit ``False`` counts as failing.
"""

import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import Host, Policy, PolicyMembership
from hoststate.db.sql import upsert
from hoststate.errors import NotFoundError, translate_store_errors

logger = logging.getLogger(__name__)


class PolicyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _new_policy(self, team_id: int | None, name: str, query: str, **kwargs) -> Policy:
        policy = Policy(team_id=team_id, name=name, query=query, **kwargs)
        with translate_store_errors():
            self.session.add(policy)
            await self.session.flush()
        return policy

    async def new_global_policy(self, name: str, query: str, **kwargs) -> Policy:
        return await self._new_policy(None, name, query, **kwargs)

    async def new_team_policy(self, team_id: int, name: str, query: str, **kwargs) -> Policy:
        return await self._new_policy(team_id, name, query, **kwargs)

    async def get_policy(self, policy_id: int) -> Policy:
        result = await self.session.execute(select(Policy).where(Policy.id == policy_id))
        policy = result.scalar_one_or_none()
        if policy is None:
            raise NotFoundError("policy", policy_id)
        return policy

    async def count_policies(self) -> int:
        result = await self.session.execute(select(func.count(Policy.id)))
        return result.scalar_one()

    async def record_policy_query_executions(
        self,
        host_id: int,
        results: dict[int, bool | None],
        updated_at: datetime,
    ) -> None:
        """Store the latest response of each policy for the host."""
        await upsert(
            self.session,
            PolicyMembership,
            [
                {
                    "policy_id": policy_id,
                    "host_id": host_id,
                    "passes": passes,
                    "created_at": updated_at,
                    "updated_at": updated_at,
                }
                for policy_id, passes in results.items()
            ],
            index_elements=("policy_id", "host_id"),
            update_columns=("passes", "updated_at"),
        )
        await self.session.execute(
            update(Host).where(Host.id == host_id).values(policy_updated_at=updated_at)
        )
