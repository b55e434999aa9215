"""Tests for host cleanups and team deletion."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from hoststate.db.models import Pack, Policy, PolicyMembership, ScheduledQueryStats
from hoststate.db.repositories.hosts import HostRepository
from hoststate.db.repositories.lifecycle import LifecycleRepository
from hoststate.db.repositories.pack_stats import PackStatsRepository
from hoststate.db.repositories.packs import PackRepository
from hoststate.db.repositories.policies import PolicyRepository
from hoststate.db.repositories.teams import TeamRepository
from hoststate.db.sql import utcnow
from hoststate.errors import NotFoundError
from hoststate.schemas.stats import PackStats, ScheduledQueryStats as QueryStats


async def _count(session, model, *where) -> int:
    return await session.scalar(select(func.count()).select_from(model).where(*where))


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


@pytest.mark.asyncio
class TestIncomingCleanup:
    async def test_removes_old_hosts_without_details(self, db_session, now):
        hosts = HostRepository(db_session)
        old = now - timedelta(minutes=10)
        no_hostname = await hosts.new_host(osquery_version="5.9", created_at=old)
        no_version = await hosts.new_host(hostname="h", created_at=old)
        await hosts.new_host(hostname="fresh", created_at=now - timedelta(minutes=2))
        complete = await hosts.new_host(hostname="done", osquery_version="5.9", created_at=old)

        removed = await LifecycleRepository(db_session).cleanup_incoming_hosts(now)
        assert removed == [no_hostname.id, no_version.id]
        assert (await hosts.host_lite(complete.id)).hostname == "done"
        with pytest.raises(NotFoundError):
            await hosts.host_lite(no_version.id)

    async def test_nothing_to_clean(self, db_session, now):
        assert await LifecycleRepository(db_session).cleanup_incoming_hosts(now) == []


@pytest.mark.asyncio
class TestExpiredCleanup:
    async def _hosts(self, session, now):
        hosts = HostRepository(session)
        stale = await hosts.new_host(
            hostname="stale", created_at=now - timedelta(days=90), seen_time=now - timedelta(days=40)
        )
        never_seen = await hosts.new_host(hostname="never", created_at=now - timedelta(days=45))
        recent = await hosts.new_host(
            hostname="recent", created_at=now - timedelta(days=90), seen_time=now - timedelta(days=1)
        )
        return stale, never_seen, recent

    async def test_disabled_does_nothing(self, db_session, now):
        await self._hosts(db_session, now)
        repo = LifecycleRepository(db_session)
        assert await repo.cleanup_expired_hosts(now, enabled=False) == []

    async def test_expires_unseen_hosts(self, db_session, now):
        stale, never_seen, recent = await self._hosts(db_session, now)
        repo = LifecycleRepository(db_session)

        removed = await repo.cleanup_expired_hosts(now, enabled=True, window_days=30)
        assert removed == [stale.id, never_seen.id]
        assert (await HostRepository(db_session).host_lite(recent.id)).hostname == "recent"
        assert await repo.cleanup_expired_hosts(now, enabled=True, window_days=30) == []

    async def test_window_is_configurable(self, db_session, now):
        stale, never_seen, _ = await self._hosts(db_session, now)
        removed = await LifecycleRepository(db_session).cleanup_expired_hosts(
            now, enabled=True, window_days=42
        )
        assert removed == [never_seen.id]


@pytest.mark.asyncio
class TestTeamDeletion:
    async def test_hosts_move_to_no_team_and_team_data_goes(self, db_session):
        teams = TeamRepository(db_session)
        team = await teams.new_team("team1")
        other = await teams.new_team("team2")
        hosts = HostRepository(db_session)
        host = await hosts.new_host(hostname="h1", team_id=team.id, platform="darwin")

        packs = PackRepository(db_session)
        team_pack = await packs.ensure_team_pack(team.id)
        other_pack = await packs.ensure_team_pack(other.id)
        query = await packs.new_query("q", "select 1")
        await packs.new_scheduled_query(team_pack.id, query.id, 60)
        await PackStatsRepository(db_session).save_host_pack_stats(
            host.id,
            [PackStats(pack_name=team_pack.name, query_stats=[QueryStats(scheduled_query_name="q", last_executed=utcnow())])],
        )

        policies = PolicyRepository(db_session)
        team_policy = await policies.new_team_policy(team.id, "p1", "select 1")
        global_policy = await policies.new_global_policy("p1", "select 1")
        await policies.record_policy_query_executions(
            host.id, {team_policy.id: False, global_policy.id: True}, utcnow()
        )

        await teams.delete_team(team.id)

        assert (await hosts.host(host.id)).team_id is None
        with pytest.raises(NotFoundError):
            await teams.get_team(team.id)
        assert await _count(db_session, Pack, Pack.id == team_pack.id) == 0
        assert await _count(db_session, Pack, Pack.id == other_pack.id) == 1
        assert await _count(db_session, ScheduledQueryStats, ScheduledQueryStats.host_id == host.id) == 0
        assert await _count(db_session, Policy) == 1
        assert await _count(db_session, PolicyMembership, PolicyMembership.host_id == host.id) == 1
        assert await teams.list_team_ids() == [other.id]

    async def test_unknown_team(self, db_session):
        with pytest.raises(NotFoundError):
            await TeamRepository(db_session).delete_team(77)
