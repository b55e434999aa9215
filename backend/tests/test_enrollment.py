"""Tests for enrollment, node key lookups and device auth tokens."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select, update

from hoststate.db.models import Host, HostDeviceAuth
from hoststate.db.repositories.enrollment import EnrollmentRepository
from hoststate.db.repositories.seen_times import SeenTimeRepository
from hoststate.db.repositories.teams import TeamRepository
from hoststate.db.sql import utcnow
from hoststate.db.statement_cache import StatementCache, statement_cache
from hoststate.errors import ConflictError, NotFoundError, RateLimitedError


@pytest.mark.asyncio
class TestEnrollHost:
    async def test_first_enrollment_creates_host(self, db_session):
        repo = EnrollmentRepository(db_session)
        before = utcnow()
        host = await repo.enroll_host("osq-1", "key-1")

        assert host.id
        assert host.osquery_host_id == "osq-1"
        assert host.node_key == "key-1"
        assert host.team_id is None
        seen = await SeenTimeRepository(db_session).seen_time(host.id)
        assert seen >= before - timedelta(seconds=1)

    async def test_reenrollment_rotates_node_key(self, db_session):
        repo = EnrollmentRepository(db_session)
        first = await repo.enroll_host("osq-1", "key-1")
        second = await repo.enroll_host("osq-1", "key-2")

        assert second.id == first.id
        loaded = await repo.load_host_by_node_key("key-2")
        assert loaded.id == first.id
        with pytest.raises(NotFoundError):
            await repo.load_host_by_node_key("key-1")

    async def test_reenrollment_keeps_team_unless_given(self, db_session):
        team = await TeamRepository(db_session).new_team("team1")
        repo = EnrollmentRepository(db_session)
        host = await repo.enroll_host("osq-1", "key-1", team_id=team.id)

        await repo.enroll_host("osq-1", "key-2")
        assert (await repo.load_host_by_node_key("key-2")).team_id == team.id

        other = await TeamRepository(db_session).new_team("team2")
        await repo.enroll_host("osq-1", "key-3", team_id=other.id)
        loaded = await repo.load_host_by_node_key("key-3")
        assert loaded.id == host.id
        assert loaded.team_id == other.id
        assert loaded.team_name == "team2"

    async def test_cooldown_rejects_quick_reenrollment(self, db_session):
        repo = EnrollmentRepository(db_session)
        await repo.enroll_host("osq-1", "key-1", cooldown=0)

        with pytest.raises(RateLimitedError) as exc_info:
            await repo.enroll_host("osq-1", "key-2", cooldown=3600)
        assert exc_info.value.retry_after > 3000

        # The rejected attempt changed nothing.
        assert (await repo.load_host_by_node_key("key-1")).osquery_host_id == "osq-1"

    async def test_cooldown_zero_disables_check(self, db_session):
        repo = EnrollmentRepository(db_session)
        await repo.enroll_host("osq-1", "key-1", cooldown=0)
        await repo.enroll_host("osq-1", "key-2", cooldown=0)
        assert (await repo.load_host_by_node_key("key-2")).osquery_host_id == "osq-1"

    async def test_concurrent_first_enrollment_yields_one_host(self, file_session_factory):
        async def enroll(i):
            async with file_session_factory() as session:
                host = await EnrollmentRepository(session).enroll_host(
                    "same-agent", f"nk{i}", cooldown=0
                )
                await session.commit()
                return host.id

        ids = await asyncio.gather(*(enroll(i) for i in range(5)))
        assert len(set(ids)) == 1

        async with file_session_factory() as session:
            assert await session.scalar(select(func.count(Host.id))) == 1
            node_key = await session.scalar(select(Host.node_key))
            assert node_key in {f"nk{i}" for i in range(5)}
            loaded = await EnrollmentRepository(session).load_host_by_node_key(node_key)
            assert loaded.id == ids[0]

    async def test_cooldown_applies_to_existing_row(self, db_session):
        repo = EnrollmentRepository(db_session)
        first = await repo.enroll_host("osq-1", "key-1", cooldown=0)
        await db_session.execute(
            update(Host)
            .where(Host.id == first.id)
            .values(last_enrolled_at=utcnow() - timedelta(hours=2))
        )
        again = await repo.enroll_host("osq-1", "key-2", cooldown=3600)
        assert again.id == first.id
        assert again.node_key == "key-2"

    async def test_duplicate_node_key_conflicts(self, db_session):
        repo = EnrollmentRepository(db_session)
        await repo.enroll_host("osq-1", "shared")
        with pytest.raises(ConflictError):
            await repo.enroll_host("osq-2", "shared")


@pytest.mark.asyncio
class TestLookups:
    async def test_empty_node_key_is_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            await EnrollmentRepository(db_session).load_host_by_node_key("")

    async def test_node_key_lookup_uses_cached_statement(self, db_session):
        repo = EnrollmentRepository(db_session)
        await repo.enroll_host("osq-1", "key-1")
        await repo.load_host_by_node_key("key-1")
        hits = statement_cache.stats()["hits"]
        await repo.load_host_by_node_key("key-1")
        assert statement_cache.stats()["hits"] == hits + 1

    async def test_host_by_identifier(self, db_session):
        repo = EnrollmentRepository(db_session)
        host = await repo.enroll_host("osq-1", "key-1")
        host.uuid = "uuid-1"
        host.hostname = "laptop.local"
        await db_session.flush()

        for identifier in ("osq-1", "key-1", "uuid-1", "laptop.local"):
            assert (await repo.host_by_identifier(identifier)).id == host.id
        with pytest.raises(NotFoundError):
            await repo.host_by_identifier("nope")


@pytest.mark.asyncio
class TestDeviceAuthToken:
    async def _backdate(self, db_session, host_id, hours):
        await db_session.execute(
            update(HostDeviceAuth)
            .where(HostDeviceAuth.host_id == host_id)
            .values(updated_at=utcnow() - timedelta(hours=hours))
        )

    async def test_token_lookup(self, db_session):
        repo = EnrollmentRepository(db_session)
        host = await repo.enroll_host("osq-1", "key-1")
        await repo.set_or_update_device_auth_token(host.id, "tok")

        assert (await repo.load_host_by_device_auth_token("tok", ttl=3600)).id == host.id
        with pytest.raises(NotFoundError):
            await repo.load_host_by_device_auth_token("other", ttl=3600)
        with pytest.raises(NotFoundError):
            await repo.load_host_by_device_auth_token("", ttl=3600)

    async def test_expired_token_is_not_found(self, db_session):
        repo = EnrollmentRepository(db_session)
        host = await repo.enroll_host("osq-1", "key-1")
        await repo.set_or_update_device_auth_token(host.id, "tok")
        await self._backdate(db_session, host.id, hours=2)

        with pytest.raises(NotFoundError):
            await repo.load_host_by_device_auth_token("tok", ttl=3600)

    async def test_same_token_does_not_refresh(self, db_session):
        repo = EnrollmentRepository(db_session)
        host = await repo.enroll_host("osq-1", "key-1")
        host_id = host.id
        await repo.set_or_update_device_auth_token(host_id, "tok")
        await self._backdate(db_session, host_id, hours=2)
        db_session.expire_all()

        await repo.set_or_update_device_auth_token(host_id, "tok")
        with pytest.raises(NotFoundError):
            await repo.load_host_by_device_auth_token("tok", ttl=3600)

        await repo.set_or_update_device_auth_token(host_id, "tok-2")
        assert (await repo.load_host_by_device_auth_token("tok-2", ttl=3600)).id == host_id


class TestStatementCache:
    def test_builds_once_per_key(self):
        cache = StatementCache()
        calls = []

        def build():
            calls.append(1)
            return object()

        first = cache.get("k", build)
        assert cache.get("k", build) is first
        assert len(calls) == 1
        assert cache.stats() == {"size": 1, "hits": 1, "misses": 1}

    def test_close_keeps_handed_out_statements(self):
        cache = StatementCache()
        stmt = cache.get("k", object)
        cache.close()
        assert len(cache) == 0
        assert stmt is not None
        assert cache.get("k", object) is not stmt
