"""List, count and search over hosts.

``list_hosts`` and ``count_hosts`` share one predicate builder so that
both always agree on the matching set; pagination applies to the list
only.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.expression import ColumnElement

from hoststate.db.models import (
    Host,
    HostAdditional,
    HostDeviceMapping as HostDeviceMappingRow,
    HostDisk,
    HostMDM,
    HostMunkiIssue,
    HostOperatingSystem,
    HostSeenTime,
    HostSoftware,
    LabelMembership,
    OperatingSystem,
    PolicyMembership,
    Team,
)
from hoststate.db.queries import (
    failing_policies_subquery,
    host_select,
    mia_clause,
    new_clause,
    online_clause,
    row_to_host,
    seen_time_expr,
    status_clause,
    team_visibility,
)
from hoststate.db.sql import escape_like, utcnow
from hoststate.errors import InvalidArgumentError
from hoststate.schemas.aggregates import TargetMetrics
from hoststate.schemas.filters import (
    NO_TEAM,
    HostListOptions,
    HostTargets,
    MDMEnrollmentStatus,
    OrderDirection,
    TeamFilter,
)
from hoststate.schemas.hosts import HostDeviceMapping, HostRead

logger = logging.getLogger(__name__)

SEARCH_LIMIT = 10

_display_name = func.lower(func.coalesce(func.nullif(Host.computer_name, ""), Host.hostname))

# Sortable keys and the expression each one orders by.
ORDER_KEYS: dict[str, Any] = {
    "id": Host.id,
    "display_name": _display_name,
    "hostname": Host.hostname,
    "computer_name": Host.computer_name,
    "uuid": Host.uuid,
    "platform": Host.platform,
    "os_version": Host.os_version,
    "osquery_version": Host.osquery_version,
    "primary_ip": Host.primary_ip,
    "hardware_serial": Host.hardware_serial,
    "memory": Host.memory,
    "uptime": Host.uptime,
    "created_at": Host.created_at,
    "updated_at": Host.updated_at,
    "detail_updated_at": Host.detail_updated_at,
    "last_enrolled_at": Host.last_enrolled_at,
    "seen_time": seen_time_expr,
    "team_name": Team.name,
}

_INT_KEYS = {"id", "memory", "uptime"}
_TIME_KEYS = {"created_at", "updated_at", "detail_updated_at", "last_enrolled_at", "seen_time"}


def _like(value: str) -> str:
    return f"%{escape_like(value)}%"


def match_query_clause(query: str) -> ColumnElement:
    """Substring match over identifying fields and device-mapping emails.

    Wildcards in ``query`` are matched literally.
    """
    pattern = _like(query)
    return or_(
        Host.hostname.ilike(pattern, escape="\\"),
        Host.computer_name.ilike(pattern, escape="\\"),
        Host.uuid.ilike(pattern, escape="\\"),
        Host.primary_ip.ilike(pattern, escape="\\"),
        Host.hardware_serial.ilike(pattern, escape="\\"),
        Host.id.in_(
            select(HostDeviceMappingRow.host_id).where(
                HostDeviceMappingRow.email.ilike(pattern, escape="\\")
            )
        ),
    )


def _mdm_enrollment_clause(status: str) -> ColumnElement:
    try:
        status = MDMEnrollmentStatus(status)
    except ValueError:
        raise InvalidArgumentError(
            "mdm_enrollment_status", f"unknown enrollment status {status!r}"
        ) from None
    if status == MDMEnrollmentStatus.AUTOMATIC:
        cond = and_(HostMDM.enrolled.is_(True), HostMDM.installed_from_dep.is_(True))
    elif status == MDMEnrollmentStatus.MANUAL:
        cond = and_(HostMDM.enrolled.is_(True), HostMDM.installed_from_dep.is_(False))
    else:
        cond = HostMDM.enrolled.is_(False)
    return Host.id.in_(select(HostMDM.host_id).where(cond))


def _policy_clause(policy_id: int, response: bool | None) -> ColumnElement:
    if response is None:
        # No response yet, or the query errored.
        return Host.id.not_in(
            select(PolicyMembership.host_id).where(
                PolicyMembership.policy_id == policy_id,
                PolicyMembership.passes.is_not(None),
            )
        )
    return Host.id.in_(
        select(PolicyMembership.host_id).where(
            PolicyMembership.policy_id == policy_id,
            PolicyMembership.passes.is_(response),
        )
    )


def _uses_disk(opts: HostListOptions) -> bool:
    return opts.low_disk_space_filter is not None or opts.disk_space


def _coerce_after(key: str, after: str):
    try:
        if key in _INT_KEYS:
            return int(after)
        if key in _TIME_KEYS:
            return datetime.fromisoformat(after)
    except ValueError:
        raise InvalidArgumentError("after", f"{after!r} is not a valid {key} value") from None
    if key == "display_name":
        return after.lower()
    return after


class HostSearchRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Predicates ────────────────────────────────────────────────────

    def _apply_filters(
        self,
        stmt: Select,
        team_filter: TeamFilter,
        opts: HostListOptions,
        now: datetime,
    ) -> Select:
        stmt = stmt.where(team_visibility(team_filter))

        if opts.team_filter is not None:
            if opts.team_filter == NO_TEAM:
                stmt = stmt.where(Host.team_id.is_(None))
            else:
                stmt = stmt.where(Host.team_id == opts.team_filter)

        if opts.status_filter:
            stmt = stmt.where(status_clause(opts.status_filter, now))

        if opts.low_disk_space_filter is not None:
            stmt = stmt.where(HostDisk.gigs_disk_space_available < opts.low_disk_space_filter)

        if opts.mdm_id_filter is not None:
            stmt = stmt.where(
                Host.id.in_(select(HostMDM.host_id).where(HostMDM.mdm_id == opts.mdm_id_filter))
            )
        if opts.mdm_enrollment_status_filter:
            stmt = stmt.where(_mdm_enrollment_clause(opts.mdm_enrollment_status_filter))

        if opts.munki_issue_id_filter is not None:
            stmt = stmt.where(
                Host.id.in_(
                    select(HostMunkiIssue.host_id).where(
                        HostMunkiIssue.munki_issue_id == opts.munki_issue_id_filter
                    )
                )
            )

        if opts.os_id_filter is not None:
            stmt = stmt.where(
                Host.id.in_(
                    select(HostOperatingSystem.host_id).where(
                        HostOperatingSystem.os_id == opts.os_id_filter
                    )
                )
            )
        if opts.os_name_filter or opts.os_version_filter:
            os_match = select(HostOperatingSystem.host_id).join(
                OperatingSystem, OperatingSystem.id == HostOperatingSystem.os_id
            )
            if opts.os_name_filter:
                os_match = os_match.where(OperatingSystem.name == opts.os_name_filter)
            if opts.os_version_filter:
                os_match = os_match.where(OperatingSystem.version == opts.os_version_filter)
            stmt = stmt.where(Host.id.in_(os_match))

        if opts.software_id_filter is not None:
            stmt = stmt.where(
                Host.id.in_(
                    select(HostSoftware.host_id).where(
                        HostSoftware.software_id == opts.software_id_filter
                    )
                )
            )

        if opts.policy_id_filter is not None:
            stmt = stmt.where(_policy_clause(opts.policy_id_filter, opts.policy_response_filter))

        if opts.label_id_filter is not None:
            stmt = stmt.where(
                Host.id.in_(
                    select(LabelMembership.host_id).where(
                        LabelMembership.label_id == opts.label_id_filter
                    )
                )
            )

        if opts.match_query:
            stmt = stmt.where(match_query_clause(opts.match_query))
        return stmt

    def _apply_order(self, stmt: Select, opts: HostListOptions) -> Select:
        key = opts.order_key or "id"
        expr = ORDER_KEYS.get(key)
        if expr is None:
            raise InvalidArgumentError("order_key", f"cannot order hosts by {key!r}")
        desc = opts.order_direction == OrderDirection.DESC

        if opts.after is not None and opts.after != "":
            after = _coerce_after(key, opts.after)
            stmt = stmt.where(expr < after if desc else expr > after)

        stmt = stmt.order_by(expr.desc() if desc else expr.asc())
        if key != "id":
            stmt = stmt.order_by(Host.id.asc())

        if opts.per_page > 0:
            stmt = stmt.limit(opts.per_page)
            if opts.after is None or opts.after == "":
                stmt = stmt.offset(opts.page * opts.per_page)
        return stmt

    # ── List / count ──────────────────────────────────────────────────

    async def list_hosts(
        self,
        team_filter: TeamFilter,
        opts: HostListOptions | None = None,
        now: datetime | None = None,
    ) -> list[HostRead]:
        opts = opts or HostListOptions()
        now = now or utcnow()

        extra = []
        if not opts.disable_failing_policies:
            extra.append(failing_policies_subquery().label("failing_policies_count"))
        if _uses_disk(opts):
            extra += [HostDisk.gigs_disk_space_available, HostDisk.percent_disk_space_available]
        if opts.additional_filters is not None:
            extra.append(HostAdditional.additional)

        stmt = host_select(*extra)
        if _uses_disk(opts):
            stmt = stmt.outerjoin(HostDisk, HostDisk.host_id == Host.id)
        if opts.additional_filters is not None:
            stmt = stmt.outerjoin(HostAdditional, HostAdditional.host_id == Host.id)

        stmt = self._apply_filters(stmt, team_filter, opts, now)
        stmt = self._apply_order(stmt, opts)

        result = await self.session.execute(stmt)
        hosts = [row_to_host(row) for row in result.all()]

        if opts.additional_filters is not None:
            keys = opts.additional_filters
            for host in hosts:
                blob = host.additional or {}
                if keys != ["*"]:
                    host.additional = {key: blob.get(key) for key in keys}
        if opts.device_mapping and hosts:
            await self._attach_device_mapping(hosts)
        return hosts

    async def count_hosts(
        self,
        team_filter: TeamFilter,
        opts: HostListOptions | None = None,
        now: datetime | None = None,
    ) -> int:
        opts = opts or HostListOptions()
        now = now or utcnow()

        stmt = (
            select(func.count(Host.id))
            .select_from(Host)
            .outerjoin(HostSeenTime, HostSeenTime.host_id == Host.id)
        )
        if opts.low_disk_space_filter is not None:
            stmt = stmt.outerjoin(HostDisk, HostDisk.host_id == Host.id)
        stmt = self._apply_filters(stmt, team_filter, opts, now)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def _attach_device_mapping(self, hosts: list[HostRead]) -> None:
        result = await self.session.execute(
            select(HostDeviceMappingRow)
            .where(HostDeviceMappingRow.host_id.in_([h.id for h in hosts]))
            .order_by(HostDeviceMappingRow.email, HostDeviceMappingRow.source)
        )
        by_host: dict[int, list[HostDeviceMapping]] = {}
        for m in result.scalars().all():
            by_host.setdefault(m.host_id, []).append(HostDeviceMapping.model_validate(m))
        for host in hosts:
            host.device_mapping = by_host.get(host.id, [])

    # ── Search ────────────────────────────────────────────────────────

    async def search_hosts(
        self, team_filter: TeamFilter, query: str, *excluded_ids: int
    ) -> list[HostRead]:
        """Most recently seen visible hosts matching ``query``, at most ``SEARCH_LIMIT``."""
        stmt = host_select().where(team_visibility(team_filter))
        if query:
            stmt = stmt.where(match_query_clause(query))
        if excluded_ids:
            stmt = stmt.where(Host.id.not_in(excluded_ids))
        stmt = stmt.order_by(seen_time_expr.desc(), Host.id.desc()).limit(SEARCH_LIMIT)
        result = await self.session.execute(stmt)
        return [row_to_host(row) for row in result.all()]

    # ── Targets ───────────────────────────────────────────────────────

    async def count_hosts_in_targets(
        self,
        team_filter: TeamFilter,
        targets: HostTargets,
        now: datetime | None = None,
    ) -> TargetMetrics:
        """Status counts over the union of the targeted hosts, labels and teams."""
        if targets.is_empty():
            return TargetMetrics()
        now = now or utcnow()

        targeted = []
        if targets.host_ids:
            targeted.append(Host.id.in_(targets.host_ids))
        if targets.label_ids:
            targeted.append(
                Host.id.in_(
                    select(LabelMembership.host_id).where(
                        LabelMembership.label_id.in_(targets.label_ids)
                    )
                )
            )
        if targets.team_ids:
            targeted.append(Host.team_id.in_(targets.team_ids))

        def _sum(cond):
            return func.coalesce(func.sum(case((cond, 1), else_=0)), 0)

        stmt = (
            select(
                func.count(Host.id),
                _sum(online_clause(now)),
                _sum(mia_clause(now)),
                _sum(new_clause(now)),
            )
            .select_from(Host)
            .outerjoin(HostSeenTime, HostSeenTime.host_id == Host.id)
            .where(team_visibility(team_filter), or_(*targeted))
        )
        total, online, mia, new = (await self.session.execute(stmt)).one()
        return TargetMetrics(
            total_hosts=total,
            online_hosts=online,
            offline_hosts=total - online,
            missing_in_action_hosts=mia,
            new_hosts=new,
        )
