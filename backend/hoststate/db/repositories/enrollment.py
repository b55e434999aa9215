"""Enrollment repository: host identity, enrollment and credential lookups.

``osquery_host_id`` identifies an agent for its whole life; ``node_key``
is the credential it presents afterwards and changes on every
re-enrollment.
"""

import logging
from datetime import timedelta

from sqlalchemy import bindparam, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from hoststate.config import settings
from hoststate.db.models import Host, HostDeviceAuth, HostDisk
from hoststate.db.queries import host_select, row_to_host
from hoststate.db.repositories.seen_times import SeenTimeRepository
from hoststate.db.sql import dialect_insert, utcnow
from hoststate.db.statement_cache import statement_cache
from hoststate.errors import NotFoundError, RateLimitedError, translate_store_errors
from hoststate.schemas.hosts import HostRead

logger = logging.getLogger(__name__)


def _node_key_statement():
    return (
        host_select(
            HostDisk.gigs_disk_space_available,
            HostDisk.percent_disk_space_available,
        )
        .outerjoin(HostDisk, HostDisk.host_id == Host.id)
        .where(Host.node_key == bindparam("node_key"))
    )


class EnrollmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def enroll_host(
        self,
        osquery_host_id: str,
        node_key: str,
        team_id: int | None = None,
        cooldown: float | None = None,
    ) -> Host:
        """Create the host on first enrollment, rotate its node key afterwards.

        A single INSERT ... ON CONFLICT statement does both, so agents
        enrolling concurrently with the same ``osquery_host_id`` end up on
        one row. ``cooldown`` is the minimum number of seconds between two
        enrollments of the same host; 0 disables the check.
        """
        if cooldown is None:
            cooldown = settings.ENROLL_COOLDOWN_SECONDS
        now = utcnow()

        stmt = dialect_insert(self.session, Host).values(
            osquery_host_id=osquery_host_id,
            node_key=node_key,
            team_id=team_id,
            detail_updated_at=now,
            label_updated_at=now,
            policy_updated_at=now,
            last_enrolled_at=now,
            created_at=now,
            updated_at=now,
        )
        reenroll_allowed = None
        if cooldown > 0:
            reenroll_allowed = or_(
                Host.last_enrolled_at.is_(None),
                Host.last_enrolled_at <= now - timedelta(seconds=cooldown),
            )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Host.osquery_host_id],
            set_={
                "node_key": stmt.excluded.node_key,
                "last_enrolled_at": stmt.excluded.last_enrolled_at,
                "team_id": func.coalesce(stmt.excluded.team_id, Host.team_id),
                "updated_at": stmt.excluded.updated_at,
            },
            where=reenroll_allowed,
        ).returning(Host.id, Host.created_at)

        with translate_store_errors():
            row = (await self.session.execute(stmt)).first()

        if row is None:
            # The row exists and the cooldown WHERE rejected the update.
            last = await self.session.scalar(
                select(Host.last_enrolled_at).where(Host.osquery_host_id == osquery_host_id)
            )
            elapsed = now - last
            raise RateLimitedError(osquery_host_id, cooldown - elapsed.total_seconds())

        if row.created_at == now:
            logger.info(f"Enrolled new host {row.id} ({osquery_host_id})")
        else:
            logger.info(f"Re-enrolled host {row.id} ({osquery_host_id})")

        await SeenTimeRepository(self.session).mark_hosts_seen([row.id], now)
        return await self.session.get(Host, row.id, populate_existing=True)

    async def load_host_by_node_key(self, node_key: str) -> HostRead:
        if not node_key:
            raise NotFoundError("host", node_key)
        stmt = statement_cache.get("host_by_node_key", _node_key_statement)
        result = await self.session.execute(stmt, {"node_key": node_key})
        row = result.first()
        if row is None:
            raise NotFoundError("host", node_key)
        return row_to_host(row)

    async def host_by_identifier(self, identifier: str) -> HostRead:
        """Find a host by osquery host id, node key, UUID or hostname."""
        result = await self.session.execute(
            host_select()
            .where(
                or_(
                    Host.osquery_host_id == identifier,
                    Host.node_key == identifier,
                    Host.uuid == identifier,
                    Host.hostname == identifier,
                )
            )
            .order_by(Host.id)
            .limit(1)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("host", identifier)
        return row_to_host(row)

    # ── Device auth tokens ────────────────────────────────────────────

    async def set_or_update_device_auth_token(self, host_id: int, token: str) -> None:
        now = utcnow()
        result = await self.session.execute(
            select(HostDeviceAuth).where(HostDeviceAuth.host_id == host_id)
        )
        auth = result.scalar_one_or_none()
        with translate_store_errors():
            if auth is None:
                self.session.add(
                    HostDeviceAuth(host_id=host_id, token=token, created_at=now, updated_at=now)
                )
            elif auth.token != token:
                auth.token = token
                auth.updated_at = now
            await self.session.flush()

    async def load_host_by_device_auth_token(
        self, token: str, ttl: float | None = None
    ) -> HostRead:
        """Host owning ``token``, provided the token was set within ``ttl`` seconds."""
        if ttl is None:
            ttl = settings.DEVICE_AUTH_TOKEN_TTL_SECONDS
        if not token:
            raise NotFoundError("host")
        cutoff = utcnow() - timedelta(seconds=ttl)
        result = await self.session.execute(
            host_select()
            .join(HostDeviceAuth, HostDeviceAuth.host_id == Host.id)
            .where(HostDeviceAuth.token == token, HostDeviceAuth.updated_at >= cutoff)
        )
        row = result.first()
        if row is None:
            raise NotFoundError("host")
        return row_to_host(row)
