"""Host query fragments shared by the record store, search and aggregates.

Every read path derives the host's seen time from ``seen_time_expr`` so
that hosts without a ``host_seen_times`` row report their creation time.
"""

from datetime import datetime

from sqlalchemy import Select, false, func, select, true
from sqlalchemy.sql.expression import ColumnElement

from hoststate.db.models import Host, HostSeenTime, PolicyMembership, Team
from hoststate.db.sql import epoch, greatest, to_epoch
from hoststate.errors import InvalidArgumentError
from hoststate.schemas.filters import Role, TeamFilter
from hoststate.schemas.hosts import (
    MIA_THRESHOLD,
    NEW_HOST_AGE,
    ONLINE_INTERVAL_BUFFER,
    HostIssues,
    HostRead,
    HostStatus,
)

HOST_COLUMNS = tuple(Host.__table__.c)

# Columns loaded by the cheap lookup path: identity, timing and osquery tuning only.
LITE_COLUMNS = (
    Host.id,
    Host.osquery_host_id,
    Host.node_key,
    Host.uuid,
    Host.hostname,
    Host.platform,
    Host.created_at,
    Host.updated_at,
    Host.detail_updated_at,
    Host.label_updated_at,
    Host.policy_updated_at,
    Host.last_enrolled_at,
    Host.distributed_interval,
    Host.logger_tls_period,
    Host.config_tls_refresh,
    Host.refetch_requested,
    Host.team_id,
)

seen_time_expr = func.coalesce(HostSeenTime.seen_time, Host.created_at)


def host_select(*extra) -> Select:
    """SELECT of every host column plus effective seen time and team name."""
    return (
        select(
            *HOST_COLUMNS,
            seen_time_expr.label("seen_time"),
            Team.name.label("team_name"),
            *extra,
        )
        .select_from(Host)
        .outerjoin(HostSeenTime, HostSeenTime.host_id == Host.id)
        .outerjoin(Team, Team.id == Host.team_id)
    )


def failing_policies_subquery():
    return (
        select(func.count())
        .select_from(PolicyMembership)
        .where(
            PolicyMembership.host_id == Host.id,
            PolicyMembership.passes.is_(False),
        )
        .correlate(Host)
        .scalar_subquery()
    )


def row_to_host(row, model=HostRead, **extra) -> HostRead:
    data = dict(row._mapping)
    failing = data.pop("failing_policies_count", None)
    if failing is not None:
        data["issues"] = HostIssues(
            failing_policies_count=failing, total_issues_count=failing
        )
    data.update(extra)
    return model.model_validate(data)


# ── Visibility ────────────────────────────────────────────────────────


def _readable_teams(team_filter: TeamFilter) -> tuple[bool, list[int]]:
    """(reads every team, ids of the teams readable through team roles)."""
    user = team_filter.user
    if user is None:
        return False, []
    if user.global_role in (Role.ADMIN, Role.MAINTAINER) or (
        user.global_role == Role.OBSERVER and team_filter.include_observer
    ):
        return True, []
    if user.global_role is not None:
        return False, []
    allowed = [
        t.team_id
        for t in user.teams
        if t.role in (Role.ADMIN, Role.MAINTAINER)
        or (t.role == Role.OBSERVER and team_filter.include_observer)
    ]
    return False, allowed


def team_visibility(team_filter: TeamFilter, team_col=Host.team_id) -> ColumnElement:
    """WHERE clause restricting hosts to the teams the caller may read."""
    every_team, allowed = _readable_teams(team_filter)
    if every_team:
        if team_filter.team_id is not None:
            return team_col == team_filter.team_id
        return true()

    if team_filter.team_id is not None:
        if team_filter.team_id in allowed:
            return team_col == team_filter.team_id
        return false()
    if not allowed:
        return false()
    return team_col.in_(allowed)


def can_read_team(team_filter: TeamFilter, team_id: int | None) -> bool:
    """Whether the caller may read data scoped to ``team_id``; None is the whole fleet."""
    every_team, allowed = _readable_teams(team_filter)
    if every_team:
        return True
    return team_id is not None and team_id in allowed


# ── Status ────────────────────────────────────────────────────────────


def online_clause(now: datetime) -> ColumnElement:
    interval = greatest(Host.distributed_interval, Host.config_tls_refresh)
    return (
        epoch(seen_time_expr) + interval + ONLINE_INTERVAL_BUFFER.total_seconds()
        > to_epoch(now)
    )


def mia_clause(now: datetime) -> ColumnElement:
    return seen_time_expr <= now - MIA_THRESHOLD


def new_clause(now: datetime) -> ColumnElement:
    return Host.created_at >= now - NEW_HOST_AGE


def status_clause(status: str, now: datetime) -> ColumnElement:
    try:
        status = HostStatus(status)
    except ValueError:
        raise InvalidArgumentError("status", f"unknown host status {status!r}") from None

    if status == HostStatus.ONLINE:
        return online_clause(now)
    if status == HostStatus.OFFLINE:
        return ~online_clause(now)
    if status == HostStatus.NEW:
        return new_clause(now)
    return mia_clause(now)
