"""Usage statistics payload assembled from the store and the rollups."""

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.config import settings
from hoststate.db.models import Host
from hoststate.db.repositories.aggregates import AggregatesRepository
from hoststate.db.repositories.labels import LabelRepository
from hoststate.db.repositories.policies import PolicyRepository
from hoststate.db.repositories.teams import TeamRepository
from hoststate.schemas.aggregates import HostsCountByOSVersion, StatisticsPayload
from hoststate.schemas.filters import Role, TeamFilter, User

logger = logging.getLogger(__name__)

# The payload covers the whole fleet regardless of team.
_FLEET_FILTER = TeamFilter(user=User(global_role=Role.ADMIN))


async def hosts_count_by_os_version(session: AsyncSession) -> dict[str, list[HostsCountByOSVersion]]:
    """Fleet-wide OS version counts keyed by platform, from the last rollup."""
    versions = await AggregatesRepository(session).os_versions(_FLEET_FILTER)
    by_platform: dict[str, list[HostsCountByOSVersion]] = {}
    for os_version in versions.os_versions:
        by_platform.setdefault(os_version.platform, []).append(
            HostsCountByOSVersion(version=os_version.name, num_enrolled=os_version.hosts_count)
        )
    return by_platform


async def collect_statistics(session: AsyncSession) -> StatisticsPayload:
    aggregates = AggregatesRepository(session)

    num_hosts = (await session.execute(select(func.count(Host.id)))).scalar_one()
    team_ids = await TeamRepository(session).list_team_ids()
    violation_days = await aggregates.policy_violation_days()

    payload = StatisticsPayload(
        version=settings.APP_VERSION,
        num_hosts_enrolled=num_hosts,
        num_teams=len(team_ids),
        num_policies=await PolicyRepository(session).count_policies(),
        num_labels=await LabelRepository(session).count_labels(),
        num_weekly_policy_violation_days_actual=violation_days.actual,
        num_weekly_policy_violation_days_possible=violation_days.possible,
        hosts_enrolled_by_operating_system=await hosts_count_by_os_version(session),
        num_hosts_not_responding=await aggregates.count_hosts_not_responding(),
    )
    logger.debug(f"Collected statistics for {num_hosts} hosts")
    return payload
