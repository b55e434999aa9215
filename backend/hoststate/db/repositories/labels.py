"""Label repository: labels and the hosts that are members of them."""

import logging
from datetime import datetime
from typing import Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.db.models import Host, Label, LabelMembership
from hoststate.db.sql import upsert
from hoststate.errors import NotFoundError, translate_store_errors

logger = logging.getLogger(__name__)

ALL_HOSTS_LABEL = "All Hosts"

LABEL_TYPE_REGULAR = "regular"
LABEL_TYPE_BUILTIN = "builtin"


class LabelRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def new_label(
        self,
        name: str,
        query: str = "",
        description: str = "",
        platform: str = "",
        label_type: str = LABEL_TYPE_REGULAR,
    ) -> Label:
        label = Label(
            name=name,
            query=query,
            description=description,
            platform=platform,
            label_type=label_type,
        )
        with translate_store_errors():
            self.session.add(label)
            await self.session.flush()
        return label

    async def get_label(self, label_id: int) -> Label:
        result = await self.session.execute(select(Label).where(Label.id == label_id))
        label = result.scalar_one_or_none()
        if label is None:
            raise NotFoundError("label", label_id)
        return label

    async def get_label_by_name(self, name: str) -> Label | None:
        result = await self.session.execute(select(Label).where(Label.name == name))
        return result.scalar_one_or_none()

    async def ensure_builtin_labels(self) -> Label:
        """Create the "All Hosts" label if missing and return it."""
        label = await self.get_label_by_name(ALL_HOSTS_LABEL)
        if label is None:
            label = await self.new_label(
                ALL_HOSTS_LABEL,
                query="select 1;",
                description="All hosts which have enrolled",
                label_type=LABEL_TYPE_BUILTIN,
            )
        return label

    async def list_label_ids_for_host(self, host_id: int) -> list[int]:
        result = await self.session.execute(
            select(LabelMembership.label_id)
            .where(LabelMembership.host_id == host_id)
            .order_by(LabelMembership.label_id)
        )
        return list(result.scalars().all())

    async def count_labels(self) -> int:
        result = await self.session.execute(select(func.count(Label.id)))
        return result.scalar_one()

    async def record_label_query_executions(
        self,
        host_id: int,
        results: dict[int, bool | None],
        updated_at: datetime,
    ) -> None:
        """Apply label query results: True adds membership, False or None removes it."""
        matching = [label_id for label_id, matches in results.items() if matches]
        removed = [label_id for label_id, matches in results.items() if not matches]

        await upsert(
            self.session,
            LabelMembership,
            [
                {"label_id": label_id, "host_id": host_id, "updated_at": updated_at}
                for label_id in matching
            ],
            index_elements=("label_id", "host_id"),
            update_columns=("updated_at",),
        )
        if removed:
            await self.session.execute(
                delete(LabelMembership).where(
                    LabelMembership.host_id == host_id,
                    LabelMembership.label_id.in_(removed),
                )
            )
        await self.session.execute(
            update(Host).where(Host.id == host_id).values(label_updated_at=updated_at)
        )
        logger.debug(
            f"Host {host_id}: {len(matching)} label matches, {len(removed)} removed"
        )

    async def host_ids_in_labels(self, label_ids: Sequence[int]) -> list[int]:
        result = await self.session.execute(
            select(LabelMembership.host_id)
            .where(LabelMembership.label_id.in_(label_ids))
            .distinct()
            .order_by(LabelMembership.host_id)
        )
        return list(result.scalars().all())
