"""Host record store: the canonical host row and its full/lite read paths."""

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import Host, HostAdditional, HostDisk
from hoststate.db.queries import (
    HOST_COLUMNS,
    LITE_COLUMNS,
    failing_policies_subquery,
    host_select,
    row_to_host,
    team_visibility,
)
from hoststate.db.repositories.host_details import HostDetailsRepository
from hoststate.db.repositories.lifecycle import LifecycleRepository
from hoststate.db.repositories.mdm_munki import MDMMunkiRepository
from hoststate.db.repositories.pack_stats import PackStatsRepository
from hoststate.db.repositories.seen_times import SeenTimeRepository
from hoststate.db.sql import upsert, utcnow
from hoststate.errors import NotFoundError, translate_store_errors
from hoststate.schemas.filters import TeamFilter
from hoststate.schemas.hosts import HostDetail, HostRead

logger = logging.getLogger(__name__)

# Columns UpdateHost never writes.
_IMMUTABLE = {"id", "created_at", "osquery_host_id"}
_UPDATABLE = tuple(c.key for c in HOST_COLUMNS if c.key not in _IMMUTABLE)


class HostRepository:
    """Typed access to the ``hosts`` row and the data joined onto it."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Create / read ─────────────────────────────────────────────────

    async def new_host(self, seen_time: datetime | None = None, **kwargs) -> Host:
        """Insert a host; ``seen_time`` goes to the seen-time table when given."""
        now = utcnow()
        for field in (
            "detail_updated_at",
            "label_updated_at",
            "policy_updated_at",
            "last_enrolled_at",
            "created_at",
            "updated_at",
        ):
            kwargs.setdefault(field, now)
        host = Host(**kwargs)
        with translate_store_errors():
            self.session.add(host)
            await self.session.flush()
        if seen_time is not None:
            await SeenTimeRepository(self.session).mark_hosts_seen([host.id], seen_time)
        logger.debug(f"Created host {host.id}")
        return host

    async def host(self, host_id: int) -> HostDetail:
        """Full host record with issues, users, pack stats, software count and extras."""
        result = await self.session.execute(
            host_select(
                HostDisk.gigs_disk_space_available,
                HostDisk.percent_disk_space_available,
                HostAdditional.additional,
                failing_policies_subquery().label("failing_policies_count"),
            )
            .outerjoin(HostDisk, HostDisk.host_id == Host.id)
            .outerjoin(HostAdditional, HostAdditional.host_id == Host.id)
            .where(Host.id == host_id)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("host", host_id)
        host = row_to_host(row, model=HostDetail)

        details = HostDetailsRepository(self.session)
        host.users = await details.list_host_users(host_id)
        host.device_mapping = await details.list_host_device_mapping(host_id)
        host.batteries = await details.list_host_batteries(host_id)
        host.software_count = await details.software_count(host_id)
        host.pack_stats = await PackStatsRepository(self.session).load_host_pack_stats(host)

        mdm_munki = MDMMunkiRepository(self.session)
        try:
            host.mdm = await mdm_munki.get_host_mdm(host_id)
        except NotFoundError:
            host.mdm = None
        try:
            host.munki_version = await mdm_munki.get_host_munki_version(host_id)
        except NotFoundError:
            host.munki_version = None
        return host

    async def host_lite(self, host_id: int) -> HostRead:
        """Cheap read: identity, timing and osquery fields only, no joins."""
        result = await self.session.execute(select(*LITE_COLUMNS).where(Host.id == host_id))
        row = result.first()
        if row is None:
            raise NotFoundError("host", host_id)
        return HostRead.model_validate(dict(row._mapping))

    async def host_ids_by_name(self, team_filter: TeamFilter, names: Sequence[str]) -> list[int]:
        if not names:
            return []
        result = await self.session.execute(
            select(Host.id)
            .where(Host.hostname.in_(names), team_visibility(team_filter))
            .order_by(Host.id)
        )
        return list(result.scalars().all())

    # ── Update ────────────────────────────────────────────────────────

    async def update_host(self, host: HostRead | Host) -> None:
        """Write every host column from ``host``; ``additional`` is left untouched."""
        values = {key: getattr(host, key) for key in _UPDATABLE}
        values["updated_at"] = utcnow()
        with translate_store_errors():
            result = await self.session.execute(
                update(Host).where(Host.id == host.id).values(**values)
            )
        if not result.rowcount:
            raise NotFoundError("host", host.id)

    async def save_host_additional(self, host_id: int, additional: dict[str, Any] | None) -> None:
        await upsert(
            self.session,
            HostAdditional,
            {"host_id": host_id, "additional": additional},
            index_elements=("host_id",),
            update_columns=("additional",),
        )

    async def add_hosts_to_team(self, team_id: int | None, host_ids: Sequence[int]) -> None:
        """Move hosts to ``team_id``; None removes them from any team."""
        if not host_ids:
            return
        with translate_store_errors():
            await self.session.execute(
                update(Host).where(Host.id.in_(list(host_ids))).values(team_id=team_id)
            )
        logger.info(f"Moved {len(host_ids)} hosts to team {team_id}")

    async def update_host_osquery_intervals(
        self,
        host_id: int,
        distributed_interval: int,
        logger_tls_period: int,
        config_tls_refresh: int,
    ) -> None:
        await self.session.execute(
            update(Host)
            .where(Host.id == host_id)
            .values(
                distributed_interval=distributed_interval,
                logger_tls_period=logger_tls_period,
                config_tls_refresh=config_tls_refresh,
            )
        )

    async def update_host_refetch_requested(self, host_id: int, requested: bool) -> None:
        await self.session.execute(
            update(Host).where(Host.id == host_id).values(refetch_requested=requested)
        )

    # ── Delete ────────────────────────────────────────────────────────

    async def delete_host(self, host_id: int) -> None:
        await LifecycleRepository(self.session).delete_host(host_id)

    async def delete_hosts(self, host_ids: Sequence[int]) -> None:
        await LifecycleRepository(self.session).delete_hosts(host_ids)
