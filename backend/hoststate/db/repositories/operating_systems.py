"""Operating system catalog and host-to-OS links.

Catalog rows are distinct per architecture and kernel version; the OS
version rollup in the aggregates module regroups them by name and
version only.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import Host, HostOperatingSystem, OperatingSystem as OperatingSystemRow
from hoststate.db.sql import insert_ignore, upsert
from hoststate.errors import NotFoundError
from hoststate.schemas.hosts import OSVersion, OperatingSystem

logger = logging.getLogger(__name__)

_IDENTITY = ("name", "version", "arch", "kernel_version", "platform")


class OperatingSystemRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_or_create(self, os: OperatingSystem) -> int:
        values = {key: getattr(os, key) for key in _IDENTITY}
        await insert_ignore(self.session, OperatingSystemRow, values, index_elements=_IDENTITY)
        result = await self.session.execute(
            select(OperatingSystemRow.id).filter_by(**values)
        )
        return result.scalar_one()

    async def update_host_operating_system(self, host_id: int, os: OperatingSystem) -> int:
        """Link the host to the catalog entry for ``os``; returns the catalog id."""
        os_id = await self._get_or_create(os)
        await upsert(
            self.session,
            HostOperatingSystem,
            {"host_id": host_id, "os_id": os_id},
            index_elements=("host_id",),
            update_columns=("os_id",),
        )
        return os_id

    async def get_host_operating_system(self, host_id: int) -> OperatingSystem:
        result = await self.session.execute(
            select(OperatingSystemRow)
            .join(HostOperatingSystem, HostOperatingSystem.os_id == OperatingSystemRow.id)
            .where(HostOperatingSystem.host_id == host_id)
        )
        os = result.scalar_one_or_none()
        if os is None:
            raise NotFoundError("host operating system", host_id)
        return OperatingSystem.model_validate(os)

    async def list_operating_systems(self) -> list[OperatingSystem]:
        result = await self.session.execute(
            select(OperatingSystemRow).order_by(OperatingSystemRow.id)
        )
        return [OperatingSystem.model_validate(os) for os in result.scalars().all()]

    async def host_ids_by_os_version(
        self, os_version: OSVersion, offset: int = 0, limit: int | None = None
    ) -> list[int]:
        stmt = (
            select(Host.id)
            .where(Host.platform == os_version.platform, Host.os_version == os_version.name)
            .order_by(Host.id)
            .offset(offset)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())
