"""API routes for reading host state, summaries and rollups."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db import get_db
from hoststate.db.models import Host
from hoststate.db.queries import team_visibility
from hoststate.db.repositories.aggregates import AggregatesRepository
from hoststate.db.repositories.hosts import HostRepository
from hoststate.db.repositories.search import HostSearchRepository
from hoststate.db.sql import utcnow
from hoststate.errors import (
    ConflictError,
    ForbiddenError,
    HostStateError,
    InvalidArgumentError,
    NotFoundError,
    RateLimitedError,
)
from hoststate.schemas.aggregates import (
    AggregatedMDMSolution,
    AggregatedMDMStatus,
    AggregatedMunkiIssue,
    AggregatedMunkiVersion,
    HostSummary,
)
from hoststate.schemas.filters import HostListOptions, OrderDirection, TeamFilter
from hoststate.schemas.hosts import HostDetail, HostRead, OSVersions

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/hosts", tags=["hosts"])

# Never sent over HTTP.
_SECRET_FIELDS = {"node_key"}


async def get_team_filter() -> TeamFilter:
    """Caller identity. Rejects every request until the embedding app overrides it."""
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")


def _http_error(exc: HostStateError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ForbiddenError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, InvalidArgumentError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, RateLimitedError):
        return HTTPException(
            status_code=429,
            detail=str(exc),
            headers={"Retry-After": str(int(exc.retry_after))},
        )
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    logger.error(f"Host state failure: {exc}")
    return HTTPException(status_code=500, detail="Internal server error")


# -- Response models --


class HostListResponse(BaseModel):
    hosts: list[HostRead]


class HostCountResponse(BaseModel):
    count: int


class MDMSummaryResponse(BaseModel):
    counts_updated_at: Optional[datetime] = None
    mobile_device_management_enrollment_status: AggregatedMDMStatus
    mobile_device_management_solution: list[AggregatedMDMSolution]


class MunkiSummaryResponse(BaseModel):
    counts_updated_at: Optional[datetime] = None
    versions: list[AggregatedMunkiVersion]
    issues: list[AggregatedMunkiIssue]


# -- Dependencies --


def list_options(
    page: int = Query(0, ge=0),
    per_page: int = Query(0, ge=0),
    order_key: str = "",
    order_direction: OrderDirection = OrderDirection.ASC,
    after: Optional[str] = None,
    query: str = "",
    status: Optional[str] = None,
    team_id: Optional[int] = None,
    low_disk_space: Optional[int] = Query(None, ge=1, le=100),
    mdm_id: Optional[int] = None,
    mdm_enrollment_status: Optional[str] = None,
    munki_issue_id: Optional[int] = None,
    os_id: Optional[int] = None,
    os_name: Optional[str] = None,
    os_version: Optional[str] = None,
    software_id: Optional[int] = None,
    policy_id: Optional[int] = None,
    policy_response: Optional[bool] = None,
    label_id: Optional[int] = None,
    device_mapping: bool = False,
    disable_failing_policies: bool = False,
    additional_info_filters: Optional[str] = None,
) -> HostListOptions:
    additional = None
    if additional_info_filters is not None:
        additional = [f.strip() for f in additional_info_filters.split(",") if f.strip()]
    return HostListOptions(
        page=page,
        per_page=per_page,
        order_key=order_key,
        order_direction=order_direction,
        after=after,
        match_query=query,
        status_filter=status,
        team_filter=team_id,
        low_disk_space_filter=low_disk_space,
        mdm_id_filter=mdm_id,
        mdm_enrollment_status_filter=mdm_enrollment_status,
        munki_issue_id_filter=munki_issue_id,
        os_id_filter=os_id,
        os_name_filter=os_name,
        os_version_filter=os_version,
        software_id_filter=software_id,
        policy_id_filter=policy_id,
        policy_response_filter=policy_response,
        label_id_filter=label_id,
        device_mapping=device_mapping,
        additional_filters=additional,
        disable_failing_policies=disable_failing_policies,
    )


# -- Routes --


@router.get(
    "",
    response_model=HostListResponse,
    response_model_exclude={"hosts": {"__all__": _SECRET_FIELDS}},
    summary="List hosts",
)
async def list_hosts(
    opts: HostListOptions = Depends(list_options),
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    try:
        hosts = await HostSearchRepository(db).list_hosts(team_filter, opts)
    except HostStateError as e:
        raise _http_error(e)
    return HostListResponse(hosts=hosts)


@router.get("/count", response_model=HostCountResponse, summary="Count hosts")
async def count_hosts(
    opts: HostListOptions = Depends(list_options),
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    try:
        count = await HostSearchRepository(db).count_hosts(team_filter, opts)
    except HostStateError as e:
        raise _http_error(e)
    return HostCountResponse(count=count)


@router.get(
    "/search",
    response_model=HostListResponse,
    response_model_exclude={"hosts": {"__all__": _SECRET_FIELDS}},
    summary="Search hosts by name, IP, serial or email",
)
async def search_hosts(
    query: str = "",
    excluded_host_ids: list[int] = Query([]),
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    hosts = await HostSearchRepository(db).search_hosts(team_filter, query, *excluded_host_ids)
    return HostListResponse(hosts=hosts)


@router.get("/summary", response_model=HostSummary, summary="Host status summary")
async def host_summary(
    team_id: Optional[int] = None,
    platform: Optional[str] = None,
    low_disk_space: Optional[int] = Query(None, ge=1, le=100),
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    team_filter = TeamFilter(
        user=team_filter.user,
        include_observer=team_filter.include_observer,
        team_id=team_id,
    )
    return await AggregatesRepository(db).generate_host_status_statistics(
        team_filter, utcnow(), platform=platform, low_disk_space=low_disk_space
    )


@router.get("/summary/mdm", response_model=MDMSummaryResponse, summary="MDM rollup")
async def mdm_summary(
    team_id: Optional[int] = None,
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    aggregates = AggregatesRepository(db)
    try:
        enrollment, updated_at = await aggregates.aggregated_mdm_status(team_filter, team_id)
        solutions, _ = await aggregates.aggregated_mdm_solutions(team_filter, team_id)
    except HostStateError as e:
        raise _http_error(e)
    return MDMSummaryResponse(
        counts_updated_at=updated_at,
        mobile_device_management_enrollment_status=enrollment,
        mobile_device_management_solution=solutions,
    )


@router.get("/summary/munki", response_model=MunkiSummaryResponse, summary="Munki rollup")
async def munki_summary(
    team_id: Optional[int] = None,
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    aggregates = AggregatesRepository(db)
    try:
        versions, updated_at = await aggregates.aggregated_munki_versions(team_filter, team_id)
        issues, _ = await aggregates.aggregated_munki_issues(team_filter, team_id)
    except HostStateError as e:
        raise _http_error(e)
    return MunkiSummaryResponse(counts_updated_at=updated_at, versions=versions, issues=issues)


@router.get("/os_versions", response_model=OSVersions, summary="OS version counts")
async def os_versions(
    team_id: Optional[int] = None,
    platform: Optional[str] = None,
    os_name: Optional[str] = None,
    os_version: Optional[str] = None,
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await AggregatesRepository(db).os_versions(
            team_filter, team_id=team_id, platform=platform, name=os_name, version=os_version
        )
    except HostStateError as e:
        raise _http_error(e)


@router.get(
    "/{host_id}",
    response_model=HostDetail,
    response_model_exclude=_SECRET_FIELDS,
    summary="Get host details",
)
async def get_host(
    host_id: int,
    team_filter: TeamFilter = Depends(get_team_filter),
    db: AsyncSession = Depends(get_db),
):
    visible = await db.execute(
        select(Host.id).where(Host.id == host_id, team_visibility(team_filter))
    )
    if visible.scalar_one_or_none() is None:
        raise HTTPException(status_code=404, detail="Host not found")
    try:
        return await HostRepository(db).host(host_id)
    except HostStateError as e:
        raise _http_error(e)
