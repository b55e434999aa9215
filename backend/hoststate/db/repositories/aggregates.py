"""Aggregation engine: live status summaries and materialised rollups.

Rollups (OS versions, MDM and Munki, policy violation days) live in
``aggregated_stats`` keyed by (team id, stats type); team id 0 holds
the whole-fleet value. They are only as fresh as the last ``generate``
or ``update`` call.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.config import settings
from hoststate.db.models import (
    AggregatedStats,
    Host,
    HostDisk,
    HostMDM,
    HostMunkiInfo,
    HostMunkiIssue,
    HostOperatingSystem,
    HostSeenTime,
    MDMSolution,
    MunkiIssue,
    OperatingSystem,
    Policy,
    PolicyMembership,
)
from hoststate.db.queries import (
    can_read_team,
    mia_clause,
    new_clause,
    online_clause,
    seen_time_expr,
    team_visibility,
)
from hoststate.db.repositories.teams import TeamRepository
from hoststate.db.sql import epoch, greatest, insert_ignore, upsert, utcnow
from hoststate.errors import ForbiddenError
from hoststate.schemas.aggregates import (
    AggregatedMDMSolution,
    AggregatedMDMStatus,
    AggregatedMunkiIssue,
    AggregatedMunkiVersion,
    HostSummary,
    PlatformCount,
    PolicyViolationDays,
)
from hoststate.schemas.filters import TeamFilter
from hoststate.schemas.hosts import LINUX_PLATFORMS, OSVersion, OSVersions

logger = logging.getLogger(__name__)

GLOBAL_STATS_ID = 0

STATS_MUNKI_VERSIONS = "munki_versions"
STATS_MUNKI_ISSUES = "munki_issues"
STATS_MDM_STATUS = "mdm_status"
STATS_MDM_SOLUTIONS = "mdm_solutions"
STATS_OS_VERSIONS = "os_versions"
STATS_POLICY_VIOLATION_DAYS = "policy_violation_days"

NOT_RESPONDING_SEEN_WINDOW = timedelta(days=7)
POLICY_VIOLATION_INCREMENT_PERIOD = timedelta(days=1)
POLICY_VIOLATION_RESET_PERIOD = timedelta(days=7)


def _count_if(cond):
    return func.coalesce(func.sum(case((cond, 1), else_=0)), 0)


def _platform_clause(platform: str):
    if platform == "linux":
        return Host.platform.in_(LINUX_PLATFORMS)
    return Host.platform == platform


class AggregatesRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Materialised stats storage ────────────────────────────────────

    async def _save_stats(self, stats_id: int, stats_type: str, value: Any, now: datetime) -> None:
        await upsert(
            self.session,
            AggregatedStats,
            {
                "id": stats_id,
                "stats_type": stats_type,
                "json_value": value,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=("id", "stats_type"),
            update_columns=("json_value", "updated_at"),
        )

    async def _load_stats(
        self, stats_id: int, stats_type: str
    ) -> tuple[Any, datetime | None]:
        result = await self.session.execute(
            select(AggregatedStats.json_value, AggregatedStats.updated_at).where(
                AggregatedStats.id == stats_id, AggregatedStats.stats_type == stats_type
            )
        )
        row = result.first()
        if row is None:
            return None, None
        return row.json_value, row.updated_at

    # ── Host status ───────────────────────────────────────────────────

    async def generate_host_status_statistics(
        self,
        team_filter: TeamFilter,
        now: datetime,
        platform: str | None = None,
        low_disk_space: int | None = None,
    ) -> HostSummary:
        """Live status counts over the hosts visible through ``team_filter``.

        Offline includes MIA hosts. ``low_disk_space_count`` is only
        computed when a threshold is given.
        """
        where = [team_visibility(team_filter)]
        if platform:
            where.append(_platform_clause(platform))

        columns = [
            func.count(Host.id),
            _count_if(online_clause(now)),
            _count_if(mia_clause(now)),
            _count_if(new_clause(now)),
            _count_if(Host.platform.in_(LINUX_PLATFORMS)),
        ]
        stmt = select(*columns).select_from(Host).outerjoin(
            HostSeenTime, HostSeenTime.host_id == Host.id
        )
        if low_disk_space is not None:
            stmt = stmt.add_columns(
                _count_if(HostDisk.gigs_disk_space_available < low_disk_space)
            ).outerjoin(HostDisk, HostDisk.host_id == Host.id)
        row = (await self.session.execute(stmt.where(*where))).one()
        total, online, mia, new, linux = row[:5]

        result = await self.session.execute(
            select(Host.platform, func.count(Host.id))
            .where(*where)
            .group_by(Host.platform)
            .order_by(Host.platform)
        )
        platforms = [PlatformCount(platform=p, hosts_count=n) for p, n in result.all()]

        return HostSummary(
            team_id=team_filter.team_id,
            totals_hosts_count=total,
            online_count=online,
            offline_count=total - online,
            mia_count=mia,
            missing_30_days_count=mia,
            new_count=new,
            all_linux_count=linux,
            low_disk_space_count=row[5] if low_disk_space is not None else None,
            platforms=platforms,
        )

    async def total_and_unseen_hosts_since(
        self, days: int, now: datetime | None = None
    ) -> tuple[int, int]:
        now = now or utcnow()
        result = await self.session.execute(
            select(
                func.count(Host.id),
                _count_if(seen_time_expr < now - timedelta(days=days)),
            )
            .select_from(Host)
            .outerjoin(HostSeenTime, HostSeenTime.host_id == Host.id)
        )
        total, unseen = result.one()
        return total, unseen

    async def count_hosts_not_responding(
        self,
        detail_update_interval: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Hosts that check in but stopped sending details.

        A host counts when its details are older than two of its own
        reporting periods, measured from its last check-in, and it was
        seen within the last week.
        """
        if detail_update_interval is None:
            detail_update_interval = settings.OSQUERY_DETAIL_UPDATE_INTERVAL_SECONDS
        now = now or utcnow()
        period = greatest(Host.distributed_interval, detail_update_interval)
        result = await self.session.execute(
            select(func.count(Host.id))
            .select_from(Host)
            .outerjoin(HostSeenTime, HostSeenTime.host_id == Host.id)
            .where(
                epoch(seen_time_expr) - 2 * period > epoch(Host.detail_updated_at),
                seen_time_expr >= now - NOT_RESPONDING_SEEN_WINDOW,
            )
        )
        return result.scalar_one()

    async def failing_policies_count(self, host_id: int) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(PolicyMembership)
            .where(PolicyMembership.host_id == host_id, PolicyMembership.passes.is_(False))
        )
        return result.scalar_one()

    # ── MDM and Munki ─────────────────────────────────────────────────

    def _scope(self, stmt, host_id_col, team_id: int | None):
        if team_id is None:
            return stmt
        return stmt.join(Host, Host.id == host_id_col).where(Host.team_id == team_id)

    async def _munki_versions(self, team_id: int | None) -> list[dict]:
        stmt = select(HostMunkiInfo.version, func.count(HostMunkiInfo.host_id))
        stmt = self._scope(stmt, HostMunkiInfo.host_id, team_id)
        result = await self.session.execute(
            stmt.group_by(HostMunkiInfo.version).order_by(HostMunkiInfo.version)
        )
        return [
            AggregatedMunkiVersion(version=v, hosts_count=n).model_dump()
            for v, n in result.all()
        ]

    async def _munki_issues(self, team_id: int | None) -> list[dict]:
        stmt = select(
            MunkiIssue.id,
            MunkiIssue.name,
            MunkiIssue.issue_type,
            func.count(HostMunkiIssue.host_id),
        ).join(HostMunkiIssue, HostMunkiIssue.munki_issue_id == MunkiIssue.id)
        stmt = self._scope(stmt, HostMunkiIssue.host_id, team_id)
        result = await self.session.execute(
            stmt.group_by(MunkiIssue.id, MunkiIssue.name, MunkiIssue.issue_type).order_by(
                MunkiIssue.id
            )
        )
        return [
            AggregatedMunkiIssue(id=i, name=name, issue_type=t, hosts_count=n).model_dump()
            for i, name, t, n in result.all()
        ]

    async def _mdm_status(self, team_id: int | None) -> dict:
        stmt = select(
            _count_if(HostMDM.enrolled.is_(True) & HostMDM.installed_from_dep.is_(False)),
            _count_if(HostMDM.enrolled.is_(True) & HostMDM.installed_from_dep.is_(True)),
            _count_if(HostMDM.enrolled.is_(False)),
            func.count(HostMDM.host_id),
        ).select_from(HostMDM)
        stmt = self._scope(stmt, HostMDM.host_id, team_id)
        manual, automated, unenrolled, total = (await self.session.execute(stmt)).one()
        return AggregatedMDMStatus(
            enrolled_manual_hosts_count=manual,
            enrolled_automated_hosts_count=automated,
            unenrolled_hosts_count=unenrolled,
            hosts_count=total,
        ).model_dump()

    async def _mdm_solutions(self, team_id: int | None) -> list[dict]:
        stmt = select(
            MDMSolution.id,
            MDMSolution.name,
            MDMSolution.server_url,
            func.count(HostMDM.host_id),
        ).join(HostMDM, HostMDM.mdm_id == MDMSolution.id)
        stmt = self._scope(stmt, HostMDM.host_id, team_id)
        result = await self.session.execute(
            stmt.group_by(MDMSolution.id, MDMSolution.name, MDMSolution.server_url).order_by(
                MDMSolution.id
            )
        )
        return [
            AggregatedMDMSolution(id=i, name=name, server_url=url, hosts_count=n).model_dump()
            for i, name, url, n in result.all()
        ]

    async def generate_aggregated_munki_and_mdm(self, now: datetime | None = None) -> None:
        """Recompute the MDM and Munki rollups for the fleet and for every team."""
        now = now or utcnow()
        team_ids = await TeamRepository(self.session).list_team_ids()
        for team_id in [None, *team_ids]:
            stats_id = GLOBAL_STATS_ID if team_id is None else team_id
            await self._save_stats(stats_id, STATS_MUNKI_VERSIONS, await self._munki_versions(team_id), now)
            await self._save_stats(stats_id, STATS_MUNKI_ISSUES, await self._munki_issues(team_id), now)
            await self._save_stats(stats_id, STATS_MDM_STATUS, await self._mdm_status(team_id), now)
            await self._save_stats(stats_id, STATS_MDM_SOLUTIONS, await self._mdm_solutions(team_id), now)
        logger.info(f"Aggregated MDM and Munki stats for {len(team_ids)} teams")

    def _check_team_access(self, team_filter: TeamFilter, team_id: int | None) -> None:
        if not can_read_team(team_filter, team_id):
            if team_id is None:
                raise ForbiddenError("fleet-wide stats")
            raise ForbiddenError("team", team_id)

    async def aggregated_munki_versions(
        self, team_filter: TeamFilter, team_id: int | None = None
    ) -> tuple[list[AggregatedMunkiVersion], datetime | None]:
        self._check_team_access(team_filter, team_id)
        value, updated_at = await self._load_stats(team_id or GLOBAL_STATS_ID, STATS_MUNKI_VERSIONS)
        return [AggregatedMunkiVersion.model_validate(v) for v in value or []], updated_at

    async def aggregated_munki_issues(
        self, team_filter: TeamFilter, team_id: int | None = None
    ) -> tuple[list[AggregatedMunkiIssue], datetime | None]:
        self._check_team_access(team_filter, team_id)
        value, updated_at = await self._load_stats(team_id or GLOBAL_STATS_ID, STATS_MUNKI_ISSUES)
        return [AggregatedMunkiIssue.model_validate(v) for v in value or []], updated_at

    async def aggregated_mdm_status(
        self, team_filter: TeamFilter, team_id: int | None = None
    ) -> tuple[AggregatedMDMStatus, datetime | None]:
        self._check_team_access(team_filter, team_id)
        value, updated_at = await self._load_stats(team_id or GLOBAL_STATS_ID, STATS_MDM_STATUS)
        return AggregatedMDMStatus.model_validate(value or {}), updated_at

    async def aggregated_mdm_solutions(
        self, team_filter: TeamFilter, team_id: int | None = None
    ) -> tuple[list[AggregatedMDMSolution], datetime | None]:
        self._check_team_access(team_filter, team_id)
        value, updated_at = await self._load_stats(team_id or GLOBAL_STATS_ID, STATS_MDM_SOLUTIONS)
        return [AggregatedMDMSolution.model_validate(v) for v in value or []], updated_at

    # ── OS versions ───────────────────────────────────────────────────

    async def update_os_versions(self, now: datetime | None = None) -> None:
        """Recompute host counts per (name, version, platform); architecture is ignored."""
        now = now or utcnow()
        result = await self.session.execute(
            select(
                OperatingSystem.name,
                OperatingSystem.version,
                OperatingSystem.platform,
                Host.team_id,
                func.count(HostOperatingSystem.host_id),
            )
            .select_from(HostOperatingSystem)
            .join(OperatingSystem, OperatingSystem.id == HostOperatingSystem.os_id)
            .join(Host, Host.id == HostOperatingSystem.host_id)
            .group_by(
                OperatingSystem.name,
                OperatingSystem.version,
                OperatingSystem.platform,
                Host.team_id,
            )
        )

        by_team: dict[int, dict[tuple, int]] = {}
        for name, version, platform, team_id, count in result.all():
            key = (name, version, platform)
            fleet_counts = by_team.setdefault(GLOBAL_STATS_ID, {})
            fleet_counts[key] = fleet_counts.get(key, 0) + count
            if team_id is not None:
                team_counts = by_team.setdefault(team_id, {})
                team_counts[key] = team_counts.get(key, 0) + count

        team_ids = await TeamRepository(self.session).list_team_ids()
        for stats_id in [GLOBAL_STATS_ID, *team_ids]:
            counts = by_team.get(stats_id, {})
            versions = [
                OSVersion(
                    hosts_count=n,
                    name=f"{name} {version}",
                    name_only=name,
                    version=version,
                    platform=platform,
                ).model_dump()
                for (name, version, platform), n in counts.items()
            ]
            versions.sort(key=lambda v: (v["name"], v["platform"]))
            await self._save_stats(stats_id, STATS_OS_VERSIONS, versions, now)
        logger.info(f"Updated OS versions for {len(team_ids)} teams")

    async def os_versions(
        self,
        team_filter: TeamFilter,
        team_id: int | None = None,
        platform: str | None = None,
        name: str | None = None,
        version: str | None = None,
    ) -> OSVersions:
        self._check_team_access(team_filter, team_id)
        if team_id is not None:
            await TeamRepository(self.session).get_team(team_id)
        value, updated_at = await self._load_stats(
            GLOBAL_STATS_ID if team_id is None else team_id, STATS_OS_VERSIONS
        )
        versions = [OSVersion.model_validate(v) for v in value or []]
        if platform:
            versions = [v for v in versions if v.platform == platform]
        if name:
            versions = [v for v in versions if v.name_only == name]
        if version:
            versions = [v for v in versions if v.version == version]
        return OSVersions(counts_updated_at=updated_at, os_versions=versions)

    # ── Policy violation days ─────────────────────────────────────────

    async def initialize_policy_violation_days(self, now: datetime | None = None) -> None:
        now = now or utcnow()
        await insert_ignore(
            self.session,
            AggregatedStats,
            {
                "id": GLOBAL_STATS_ID,
                "stats_type": STATS_POLICY_VIOLATION_DAYS,
                "json_value": {"actual": 0, "possible": 0},
                "created_at": now,
                # The first increment is due right away.
                "updated_at": now - POLICY_VIOLATION_INCREMENT_PERIOD,
            },
            index_elements=("id", "stats_type"),
        )

    async def increment_policy_violation_days(self, now: datetime | None = None) -> bool:
        """Add today's failing and possible policy-host pairs; at most once a day.

        The counters restart once the current week is over. Returns
        whether an increment happened.
        """
        now = now or utcnow()
        await self.initialize_policy_violation_days(now)
        result = await self.session.execute(
            select(
                AggregatedStats.json_value, AggregatedStats.created_at, AggregatedStats.updated_at
            ).where(
                AggregatedStats.id == GLOBAL_STATS_ID,
                AggregatedStats.stats_type == STATS_POLICY_VIOLATION_DAYS,
            )
        )
        stats = result.one()
        if now - stats.updated_at < POLICY_VIOLATION_INCREMENT_PERIOD:
            return False

        value = dict(stats.json_value)
        created_at = stats.created_at
        if now - created_at >= POLICY_VIOLATION_RESET_PERIOD:
            value = {"actual": 0, "possible": 0}
            created_at = now

        failing = (
            await self.session.execute(
                select(func.count())
                .select_from(PolicyMembership)
                .where(PolicyMembership.passes.is_(False))
            )
        ).scalar_one()
        policies = (await self.session.execute(select(func.count(Policy.id)))).scalar_one()
        hosts = (await self.session.execute(select(func.count(Host.id)))).scalar_one()

        value["actual"] += failing
        value["possible"] += policies * hosts
        await self.session.execute(
            update(AggregatedStats)
            .where(
                AggregatedStats.id == GLOBAL_STATS_ID,
                AggregatedStats.stats_type == STATS_POLICY_VIOLATION_DAYS,
            )
            .values(json_value=value, created_at=created_at, updated_at=now)
        )
        logger.info(
            f"Policy violation days: actual={value['actual']} possible={value['possible']}"
        )
        return True

    async def policy_violation_days(self) -> PolicyViolationDays:
        value, updated_at = await self._load_stats(GLOBAL_STATS_ID, STATS_POLICY_VIOLATION_DAYS)
        if value is None:
            return PolicyViolationDays()
        return PolicyViolationDays(
            actual=value.get("actual", 0),
            possible=value.get("possible", 0),
            updated_at=updated_at,
        )
