"""MDM enrollment and Munki status of hosts.

MDM solutions and Munki issues are shared catalogs; hosts reference
them by id.
"""

import logging
from typing import Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.config import settings
from hoststate.db.models import (
    HostMDM as HostMDMRow,
    HostMunkiInfo,
    HostMunkiIssue as HostMunkiIssueRow,
    MDMSolution as MDMSolutionRow,
    MunkiIssue as MunkiIssueRow,
)
from hoststate.db.sql import chunked, insert_ignore, upsert
from hoststate.errors import NotFoundError
from hoststate.schemas.hosts import HostMDM, HostMunkiIssue, MDMSolution, MunkiIssue

logger = logging.getLogger(__name__)

MUNKI_ISSUE_NAME_MAX_LENGTH = 255

MUNKI_ERROR = "error"
MUNKI_WARNING = "warning"

MDM_NAME_KANDJI = "Kandji"
MDM_NAME_SIMPLEMDM = "SimpleMDM"
MDM_NAME_UNKNOWN = "Unknown"


def mdm_name_from_server_url(server_url: str) -> str:
    url = server_url.lower()
    if "kandji" in url:
        return MDM_NAME_KANDJI
    if "simplemdm" in url:
        return MDM_NAME_SIMPLEMDM
    return MDM_NAME_UNKNOWN


def truncate_issue_name(name: str) -> str:
    # str slicing counts code points, so multi-byte characters stay whole.
    return name[:MUNKI_ISSUE_NAME_MAX_LENGTH]


class MDMMunkiRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── MDM ───────────────────────────────────────────────────────────

    async def _get_or_create_mdm_solution(self, server_url: str) -> int:
        name = mdm_name_from_server_url(server_url)
        await insert_ignore(
            self.session,
            MDMSolutionRow,
            {"name": name, "server_url": server_url},
            index_elements=("name", "server_url"),
        )
        result = await self.session.execute(
            select(MDMSolutionRow.id).where(
                MDMSolutionRow.name == name, MDMSolutionRow.server_url == server_url
            )
        )
        return result.scalar_one()

    async def set_or_update_mdm_data(
        self,
        host_id: int,
        enrolled: bool,
        server_url: str,
        installed_from_dep: bool,
    ) -> None:
        mdm_id = await self._get_or_create_mdm_solution(server_url) if server_url else None
        await upsert(
            self.session,
            HostMDMRow,
            {
                "host_id": host_id,
                "enrolled": enrolled,
                "server_url": server_url,
                "installed_from_dep": installed_from_dep,
                "mdm_id": mdm_id,
            },
            index_elements=("host_id",),
            update_columns=("enrolled", "server_url", "installed_from_dep", "mdm_id"),
        )

    async def get_host_mdm(self, host_id: int) -> HostMDM:
        result = await self.session.execute(
            select(HostMDMRow, MDMSolutionRow.name)
            .outerjoin(MDMSolutionRow, MDMSolutionRow.id == HostMDMRow.mdm_id)
            .where(HostMDMRow.host_id == host_id)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("host MDM", host_id)
        mdm, name = row
        return HostMDM(
            host_id=mdm.host_id,
            enrolled=mdm.enrolled,
            server_url=mdm.server_url,
            installed_from_dep=mdm.installed_from_dep,
            mdm_id=mdm.mdm_id,
            name=name or "",
        )

    async def get_mdm_solution(self, mdm_id: int) -> MDMSolution:
        result = await self.session.execute(
            select(MDMSolutionRow).where(MDMSolutionRow.id == mdm_id)
        )
        solution = result.scalar_one_or_none()
        if solution is None:
            raise NotFoundError("MDM solution", mdm_id)
        return MDMSolution.model_validate(solution)

    # ── Munki ─────────────────────────────────────────────────────────

    async def get_or_insert_munki_issues(
        self,
        errors: Sequence[str],
        warnings: Sequence[str],
        batch_size: int | None = None,
    ) -> list[int]:
        """Catalog ids of the given issues, creating missing ones batch by batch."""
        batch_size = batch_size or settings.MUNKI_ISSUE_BATCH_SIZE
        ids: list[int] = []
        for issue_type, names in ((MUNKI_ERROR, errors), (MUNKI_WARNING, warnings)):
            unique = sorted({truncate_issue_name(n) for n in names})
            for batch in chunked(unique, batch_size):
                await insert_ignore(
                    self.session,
                    MunkiIssueRow,
                    [{"name": name, "issue_type": issue_type} for name in batch],
                    index_elements=("name", "issue_type"),
                )
                result = await self.session.execute(
                    select(MunkiIssueRow.id).where(
                        MunkiIssueRow.issue_type == issue_type,
                        MunkiIssueRow.name.in_(batch),
                    )
                )
                ids.extend(result.scalars().all())
        return ids

    async def set_or_update_munki_info(
        self,
        host_id: int,
        version: str,
        errors: Sequence[str] = (),
        warnings: Sequence[str] = (),
    ) -> None:
        """Store the host's Munki version and issues; an empty version means uninstalled."""
        if not version:
            await self.session.execute(delete(HostMunkiInfo).where(HostMunkiInfo.host_id == host_id))
            await self.session.execute(
                delete(HostMunkiIssueRow).where(HostMunkiIssueRow.host_id == host_id)
            )
            logger.debug(f"Host {host_id}: Munki removed")
            return

        await upsert(
            self.session,
            HostMunkiInfo,
            {"host_id": host_id, "version": version},
            index_elements=("host_id",),
            update_columns=("version", "updated_at"),
        )

        wanted = set(await self.get_or_insert_munki_issues(errors, warnings))
        result = await self.session.execute(
            select(HostMunkiIssueRow.munki_issue_id).where(HostMunkiIssueRow.host_id == host_id)
        )
        current = set(result.scalars().all())

        removed = current - wanted
        if removed:
            await self.session.execute(
                delete(HostMunkiIssueRow).where(
                    HostMunkiIssueRow.host_id == host_id,
                    HostMunkiIssueRow.munki_issue_id.in_(removed),
                )
            )
        await insert_ignore(
            self.session,
            HostMunkiIssueRow,
            [{"host_id": host_id, "munki_issue_id": i} for i in sorted(wanted - current)],
        )

    async def get_host_munki_version(self, host_id: int) -> str:
        result = await self.session.execute(
            select(HostMunkiInfo.version).where(HostMunkiInfo.host_id == host_id)
        )
        version = result.scalar_one_or_none()
        if version is None:
            raise NotFoundError("host Munki info", host_id)
        return version

    async def get_host_munki_issues(self, host_id: int) -> list[HostMunkiIssue]:
        result = await self.session.execute(
            select(
                MunkiIssueRow.id,
                MunkiIssueRow.name,
                MunkiIssueRow.issue_type,
                HostMunkiIssueRow.created_at,
            )
            .join(HostMunkiIssueRow, HostMunkiIssueRow.munki_issue_id == MunkiIssueRow.id)
            .where(HostMunkiIssueRow.host_id == host_id)
            .order_by(MunkiIssueRow.name, MunkiIssueRow.id)
        )
        return [
            HostMunkiIssue(
                munki_issue_id=issue_id,
                name=name,
                issue_type=issue_type,
                host_issue_created_at=created_at,
            )
            for issue_id, name, issue_type, created_at in result.all()
        ]

    async def get_munki_issue(self, munki_issue_id: int) -> MunkiIssue:
        result = await self.session.execute(
            select(MunkiIssueRow).where(MunkiIssueRow.id == munki_issue_id)
        )
        issue = result.scalar_one_or_none()
        if issue is None:
            raise NotFoundError("Munki issue", munki_issue_id)
        return MunkiIssue.model_validate(issue)
