"""Per-host inventories: users, device mapping, batteries, disk space, software.

Each ``save``/``replace`` call diffs the reported set against what is
stored and writes only the rows that changed.
"""

import logging
from typing import Sequence

from sqlalchemy import delete, func, select, tuple_
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import (
    HostBattery as HostBatteryRow,
    HostDeviceMapping as HostDeviceMappingRow,
    HostDisk,
    HostSoftware,
    HostUser as HostUserRow,
    Software as SoftwareRow,
)
from hoststate.db.sql import chunked, insert_ignore, upsert
from hoststate.errors import InvalidArgumentError
from hoststate.schemas.hosts import HostBattery, HostDeviceMapping, HostUser, Software

logger = logging.getLogger(__name__)


def _check_host_ids(host_id: int, items: Sequence, kind: str) -> None:
    for item in items:
        if item.host_id != host_id:
            raise InvalidArgumentError(
                kind, f"all entries must belong to host {host_id}, found {item.host_id}"
            )


class HostDetailsRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Users ─────────────────────────────────────────────────────────

    async def save_host_users(self, host_id: int, users: Sequence[HostUser]) -> None:
        result = await self.session.execute(
            select(HostUserRow).where(HostUserRow.host_id == host_id)
        )
        stored = {(u.uid, u.username): u for u in result.scalars().all()}
        incoming = {(u.uid, u.username): u for u in users}

        removed = [row.id for key, row in stored.items() if key not in incoming]
        if removed:
            await self.session.execute(delete(HostUserRow).where(HostUserRow.id.in_(removed)))

        for key, user in incoming.items():
            row = stored.get(key)
            if row is None:
                self.session.add(
                    HostUserRow(
                        host_id=host_id,
                        uid=user.uid,
                        username=user.username,
                        user_type=user.type,
                        groupname=user.groupname,
                        shell=user.shell,
                    )
                )
            elif (row.user_type, row.groupname, row.shell) != (user.type, user.groupname, user.shell):
                row.user_type = user.type
                row.groupname = user.groupname
                row.shell = user.shell
        await self.session.flush()

    async def list_host_users(self, host_id: int) -> list[HostUser]:
        result = await self.session.execute(
            select(HostUserRow)
            .where(HostUserRow.host_id == host_id)
            .order_by(HostUserRow.uid, HostUserRow.username)
        )
        return [
            HostUser(
                uid=row.uid,
                username=row.username,
                type=row.user_type,
                groupname=row.groupname,
                shell=row.shell,
            )
            for row in result.scalars().all()
        ]

    # ── Device mapping ────────────────────────────────────────────────

    async def replace_host_device_mapping(
        self, host_id: int, mappings: Sequence[HostDeviceMapping] | None
    ) -> None:
        """Make the stored (email, source) set equal to ``mappings``."""
        mappings = mappings or []
        _check_host_ids(host_id, mappings, "device mapping")

        result = await self.session.execute(
            select(HostDeviceMappingRow).where(HostDeviceMappingRow.host_id == host_id)
        )
        stored = {(m.email, m.source): m for m in result.scalars().all()}
        wanted = {(m.email, m.source) for m in mappings}

        removed = [row.id for key, row in stored.items() if key not in wanted]
        if removed:
            await self.session.execute(
                delete(HostDeviceMappingRow).where(HostDeviceMappingRow.id.in_(removed))
            )
        await insert_ignore(
            self.session,
            HostDeviceMappingRow,
            [
                {"host_id": host_id, "email": email, "source": source}
                for email, source in sorted(wanted - stored.keys())
            ],
        )

    async def list_host_device_mapping(self, host_id: int) -> list[HostDeviceMapping]:
        result = await self.session.execute(
            select(HostDeviceMappingRow)
            .where(HostDeviceMappingRow.host_id == host_id)
            .order_by(HostDeviceMappingRow.email, HostDeviceMappingRow.source)
        )
        return [HostDeviceMapping.model_validate(m) for m in result.scalars().all()]

    # ── Batteries ─────────────────────────────────────────────────────

    async def replace_host_batteries(self, host_id: int, batteries: Sequence[HostBattery]) -> None:
        _check_host_ids(host_id, batteries, "battery")

        result = await self.session.execute(
            select(HostBatteryRow).where(HostBatteryRow.host_id == host_id)
        )
        stored = {b.serial_number: b for b in result.scalars().all()}
        incoming = {b.serial_number: b for b in batteries}

        removed = [row.id for serial, row in stored.items() if serial not in incoming]
        if removed:
            await self.session.execute(delete(HostBatteryRow).where(HostBatteryRow.id.in_(removed)))

        for serial, battery in incoming.items():
            row = stored.get(serial)
            if row is None:
                self.session.add(
                    HostBatteryRow(
                        host_id=host_id,
                        serial_number=serial,
                        cycle_count=battery.cycle_count,
                        health=battery.health,
                    )
                )
            elif (row.cycle_count, row.health) != (battery.cycle_count, battery.health):
                row.cycle_count = battery.cycle_count
                row.health = battery.health
        await self.session.flush()

    async def list_host_batteries(self, host_id: int) -> list[HostBattery]:
        result = await self.session.execute(
            select(HostBatteryRow)
            .where(HostBatteryRow.host_id == host_id)
            .order_by(HostBatteryRow.serial_number)
        )
        return [HostBattery.model_validate(b) for b in result.scalars().all()]

    # ── Disk space ────────────────────────────────────────────────────

    async def set_or_update_host_disks_space(
        self, host_id: int, gigs_available: float, percent_available: float
    ) -> None:
        await upsert(
            self.session,
            HostDisk,
            {
                "host_id": host_id,
                "gigs_disk_space_available": gigs_available,
                "percent_disk_space_available": percent_available,
            },
            index_elements=("host_id",),
            update_columns=("gigs_disk_space_available", "percent_disk_space_available", "updated_at"),
        )

    # ── Software ──────────────────────────────────────────────────────

    async def _software_ids(self, software: Sequence[Software]) -> dict[tuple, int]:
        """Get-or-create catalog rows, keyed by (name, version, source)."""
        keys = sorted({(s.name, s.version, s.source) for s in software})
        bundles = {(s.name, s.version, s.source): s.bundle_identifier for s in software}
        ids: dict[tuple, int] = {}
        for batch in chunked(keys, 500):
            await insert_ignore(
                self.session,
                SoftwareRow,
                [
                    {"name": n, "version": v, "source": src, "bundle_identifier": bundles[(n, v, src)]}
                    for n, v, src in batch
                ],
                index_elements=("name", "version", "source"),
            )
            result = await self.session.execute(
                select(SoftwareRow.id, SoftwareRow.name, SoftwareRow.version, SoftwareRow.source).where(
                    tuple_(SoftwareRow.name, SoftwareRow.version, SoftwareRow.source).in_(batch)
                )
            )
            for sw_id, name, version, source in result.all():
                ids[(name, version, source)] = sw_id
        return ids

    async def update_host_software(self, host_id: int, software: Sequence[Software]) -> None:
        """Make the host's software links match ``software``."""
        wanted = set((await self._software_ids(software)).values()) if software else set()

        result = await self.session.execute(
            select(HostSoftware.software_id).where(HostSoftware.host_id == host_id)
        )
        current = set(result.scalars().all())

        removed = current - wanted
        if removed:
            await self.session.execute(
                delete(HostSoftware).where(
                    HostSoftware.host_id == host_id,
                    HostSoftware.software_id.in_(removed),
                )
            )
        await insert_ignore(
            self.session,
            HostSoftware,
            [{"host_id": host_id, "software_id": sw_id} for sw_id in sorted(wanted - current)],
        )
        logger.debug(
            f"Host {host_id} software: +{len(wanted - current)} -{len(removed)}"
        )

    async def load_host_software(self, host_id: int) -> list[Software]:
        result = await self.session.execute(
            select(SoftwareRow)
            .join(HostSoftware, HostSoftware.software_id == SoftwareRow.id)
            .where(HostSoftware.host_id == host_id)
            .order_by(SoftwareRow.name, SoftwareRow.id)
        )
        return [Software.model_validate(s) for s in result.scalars().all()]

    async def software_count(self, host_id: int) -> int:
        result = await self.session.execute(
            select(func.count()).select_from(HostSoftware).where(HostSoftware.host_id == host_id)
        )
        return result.scalar_one()
