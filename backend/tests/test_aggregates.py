"""Tests for live status summaries and the materialised rollups."""

from datetime import timedelta

import pytest

from hoststate.db.repositories.aggregates import AggregatesRepository
from hoststate.db.repositories.host_details import HostDetailsRepository
from hoststate.db.repositories.hosts import HostRepository
from hoststate.db.repositories.mdm_munki import MDMMunkiRepository
from hoststate.db.repositories.operating_systems import OperatingSystemRepository
from hoststate.db.repositories.policies import PolicyRepository
from hoststate.db.repositories.teams import TeamRepository
from hoststate.db.sql import utcnow
from hoststate.errors import ForbiddenError, NotFoundError
from hoststate.schemas.filters import Role, TeamFilter, User, UserTeam
from hoststate.schemas.hosts import OperatingSystem


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


@pytest.mark.asyncio
class TestHostStatusStatistics:
    async def _fleet(self, session, now):
        hosts = HostRepository(session)
        details = HostDetailsRepository(session)
        online = await hosts.new_host(
            hostname="online", platform="darwin", distributed_interval=10,
            created_at=now - timedelta(days=10), seen_time=now,
        )
        await hosts.new_host(
            hostname="offline", platform="ubuntu", distributed_interval=10,
            created_at=now - timedelta(days=10), seen_time=now - timedelta(hours=2),
        )
        await hosts.new_host(
            hostname="mia", platform="windows", distributed_interval=10,
            created_at=now - timedelta(days=50), seen_time=now - timedelta(days=40),
        )
        fresh = await hosts.new_host(
            hostname="new", platform="rhel", distributed_interval=10,
            created_at=now - timedelta(hours=1), seen_time=now - timedelta(seconds=20),
        )
        await details.set_or_update_host_disks_space(online.id, 10.0, 5.0)
        await details.set_or_update_host_disks_space(fresh.id, 300.0, 60.0)

    async def test_counts(self, db_session, admin_filter, now):
        await self._fleet(db_session, now)
        summary = await AggregatesRepository(db_session).generate_host_status_statistics(
            admin_filter, now
        )
        assert summary.totals_hosts_count == 4
        assert summary.online_count == 2
        assert summary.offline_count == 2
        assert summary.mia_count == 1
        assert summary.missing_30_days_count == 1
        assert summary.new_count == 1
        assert summary.all_linux_count == 2
        assert summary.low_disk_space_count is None
        assert [(p.platform, p.hosts_count) for p in summary.platforms] == [
            ("darwin", 1),
            ("rhel", 1),
            ("ubuntu", 1),
            ("windows", 1),
        ]

    async def test_platform_and_low_disk(self, db_session, admin_filter, now):
        await self._fleet(db_session, now)
        repo = AggregatesRepository(db_session)

        linux = await repo.generate_host_status_statistics(admin_filter, now, platform="linux")
        assert linux.totals_hosts_count == 2
        assert [p.platform for p in linux.platforms] == ["rhel", "ubuntu"]

        darwin = await repo.generate_host_status_statistics(
            admin_filter, now, platform="darwin", low_disk_space=32
        )
        assert darwin.totals_hosts_count == 1
        assert darwin.low_disk_space_count == 1

        everyone = await repo.generate_host_status_statistics(admin_filter, now, low_disk_space=32)
        assert everyone.low_disk_space_count == 1

    async def test_empty_and_invisible(self, db_session, admin_filter, now):
        repo = AggregatesRepository(db_session)
        summary = await repo.generate_host_status_statistics(admin_filter, now)
        assert summary.totals_hosts_count == 0
        assert summary.platforms == []

        await self._fleet(db_session, now)
        observer = TeamFilter(user=User(id=2, global_role=Role.OBSERVER))
        assert (await repo.generate_host_status_statistics(observer, now)).totals_hosts_count == 0

    async def test_team_scope(self, db_session, admin_filter, now):
        team = await TeamRepository(db_session).new_team("team1")
        hosts = HostRepository(db_session)
        await hosts.new_host(hostname="a", team_id=team.id, seen_time=now)
        await hosts.new_host(hostname="b", seen_time=now)

        scoped = TeamFilter(user=admin_filter.user, team_id=team.id)
        summary = await AggregatesRepository(db_session).generate_host_status_statistics(scoped, now)
        assert summary.team_id == team.id
        assert summary.totals_hosts_count == 1


@pytest.mark.asyncio
class TestHostHealthCounts:
    async def test_total_and_unseen(self, db_session, now):
        hosts = HostRepository(db_session)
        await hosts.new_host(hostname="recent", seen_time=now - timedelta(hours=1))
        await hosts.new_host(hostname="stale", seen_time=now - timedelta(days=3))
        await hosts.new_host(hostname="never-seen", created_at=now - timedelta(days=5))

        repo = AggregatesRepository(db_session)
        assert await repo.total_and_unseen_hosts_since(1, now=now) == (3, 2)
        assert await repo.total_and_unseen_hosts_since(4, now=now) == (3, 1)
        assert await repo.total_and_unseen_hosts_since(30, now=now) == (3, 0)

    async def test_not_responding(self, db_session, now):
        hosts = HostRepository(db_session)
        # Details far older than two periods, seen recently.
        await hosts.new_host(
            hostname="stuck", distributed_interval=10,
            detail_updated_at=now - timedelta(hours=3), seen_time=now,
        )
        # Distributed interval longer than the detail interval sets the period.
        await hosts.new_host(
            hostname="slow", distributed_interval=7200,
            detail_updated_at=now - timedelta(hours=3), seen_time=now,
        )
        # Fresh details.
        await hosts.new_host(
            hostname="healthy", distributed_interval=10,
            detail_updated_at=now - timedelta(minutes=30), seen_time=now,
        )
        # Not seen for over a week.
        await hosts.new_host(
            hostname="gone", distributed_interval=10,
            detail_updated_at=now - timedelta(days=20), seen_time=now - timedelta(days=8),
        )

        repo = AggregatesRepository(db_session)
        assert await repo.count_hosts_not_responding(detail_update_interval=3600, now=now) == 1
        assert await repo.count_hosts_not_responding(detail_update_interval=60, now=now) == 2

    async def test_failing_policies_count(self, db_session):
        hosts = HostRepository(db_session)
        host = await hosts.new_host(hostname="h1")
        policies = PolicyRepository(db_session)
        p1 = await policies.new_global_policy("p1", "select 1")
        p2 = await policies.new_global_policy("p2", "select 1")
        p3 = await policies.new_global_policy("p3", "select 1")
        await policies.record_policy_query_executions(
            host.id, {p1.id: False, p2.id: True, p3.id: None}, utcnow()
        )

        repo = AggregatesRepository(db_session)
        assert await repo.failing_policies_count(host.id) == 1

        await policies.record_policy_query_executions(host.id, {p2.id: False, p3.id: False}, utcnow())
        assert await repo.failing_policies_count(host.id) == 3
        assert await repo.failing_policies_count(host.id + 1) == 0


@pytest.mark.asyncio
class TestMunkiAndMDMRollups:
    async def test_global_and_team(self, db_session, admin_filter, now):
        teams = TeamRepository(db_session)
        t1 = await teams.new_team("t1")
        empty = await teams.new_team("empty")
        hosts = HostRepository(db_session)
        h1 = await hosts.new_host(hostname="h1", team_id=t1.id)
        h2 = await hosts.new_host(hostname="h2")
        h3 = await hosts.new_host(hostname="h3", team_id=t1.id)

        mdm = MDMMunkiRepository(db_session)
        await mdm.set_or_update_munki_info(h1.id, "5.5", errors=["e1"], warnings=["w1"])
        await mdm.set_or_update_munki_info(h2.id, "5.5", errors=["e1"])
        await mdm.set_or_update_munki_info(h3.id, "6.0")
        await mdm.set_or_update_mdm_data(h1.id, True, "https://kandji.io", True)
        await mdm.set_or_update_mdm_data(h2.id, True, "https://kandji.io", False)
        await mdm.set_or_update_mdm_data(h3.id, False, "https://simplemdm.com", False)

        repo = AggregatesRepository(db_session)
        await repo.generate_aggregated_munki_and_mdm(now=now)

        versions, updated_at = await repo.aggregated_munki_versions(admin_filter)
        assert updated_at == now
        assert [(v.version, v.hosts_count) for v in versions] == [("5.5", 2), ("6.0", 1)]
        issues, _ = await repo.aggregated_munki_issues(admin_filter)
        assert sorted((i.name, i.issue_type, i.hosts_count) for i in issues) == [
            ("e1", "error", 2),
            ("w1", "warning", 1),
        ]
        status, _ = await repo.aggregated_mdm_status(admin_filter)
        assert (
            status.enrolled_automated_hosts_count,
            status.enrolled_manual_hosts_count,
            status.unenrolled_hosts_count,
            status.hosts_count,
        ) == (1, 1, 1, 3)
        solutions, _ = await repo.aggregated_mdm_solutions(admin_filter)
        assert sorted((s.name, s.hosts_count) for s in solutions) == [("Kandji", 2), ("SimpleMDM", 1)]

        team_versions, _ = await repo.aggregated_munki_versions(admin_filter, t1.id)
        assert [(v.version, v.hosts_count) for v in team_versions] == [("5.5", 1), ("6.0", 1)]
        team_issues, _ = await repo.aggregated_munki_issues(admin_filter, t1.id)
        assert sorted((i.name, i.hosts_count) for i in team_issues) == [("e1", 1), ("w1", 1)]
        team_status, _ = await repo.aggregated_mdm_status(admin_filter, t1.id)
        assert (team_status.enrolled_automated_hosts_count, team_status.unenrolled_hosts_count) == (1, 1)
        assert team_status.enrolled_manual_hosts_count == 0

        empty_versions, empty_updated = await repo.aggregated_munki_versions(admin_filter, empty.id)
        assert empty_versions == []
        assert empty_updated == now
        empty_status, _ = await repo.aggregated_mdm_status(admin_filter, empty.id)
        assert empty_status.hosts_count == 0

    async def test_not_generated_yet(self, db_session, admin_filter):
        repo = AggregatesRepository(db_session)
        versions, updated_at = await repo.aggregated_munki_versions(admin_filter)
        assert versions == []
        assert updated_at is None
        status, _ = await repo.aggregated_mdm_status(admin_filter)
        assert status.hosts_count == 0

    async def test_regeneration_reflects_changes(self, db_session, admin_filter, now):
        hosts = HostRepository(db_session)
        host = await hosts.new_host(hostname="h1")
        mdm = MDMMunkiRepository(db_session)
        await mdm.set_or_update_munki_info(host.id, "5.5", errors=["e1"])

        repo = AggregatesRepository(db_session)
        await repo.generate_aggregated_munki_and_mdm(now=now)
        await mdm.set_or_update_munki_info(host.id, "")
        later = now + timedelta(hours=1)
        await repo.generate_aggregated_munki_and_mdm(now=later)

        versions, updated_at = await repo.aggregated_munki_versions(admin_filter)
        assert versions == []
        assert updated_at == later
        issues, _ = await repo.aggregated_munki_issues(admin_filter)
        assert issues == []


@pytest.mark.asyncio
class TestOSVersions:
    async def _fleet(self, session):
        teams = TeamRepository(session)
        t1 = await teams.new_team("t1")
        t2 = await teams.new_team("t2")
        hosts = HostRepository(session)
        oses = OperatingSystemRepository(session)

        ventura_arm = OperatingSystem(name="macOS", version="13.1", arch="arm64", platform="darwin")
        ventura_x86 = OperatingSystem(name="macOS", version="13.1", arch="x86_64", platform="darwin")
        ubuntu = OperatingSystem(name="Ubuntu", version="22.04", platform="ubuntu")
        for hostname, os, team_id in (
            ("m1", ventura_arm, t1.id),
            ("m2", ventura_x86, t1.id),
            ("m3", ventura_arm, None),
            ("u1", ubuntu, None),
        ):
            host = await hosts.new_host(hostname=hostname, team_id=team_id)
            await oses.update_host_operating_system(host.id, os)
        return t1, t2

    async def test_global_and_team_counts(self, db_session, admin_filter, now):
        t1, t2 = await self._fleet(db_session)
        repo = AggregatesRepository(db_session)
        await repo.update_os_versions(now=now)

        fleet = await repo.os_versions(admin_filter)
        assert fleet.counts_updated_at == now
        assert [(v.name, v.name_only, v.version, v.platform, v.hosts_count) for v in fleet.os_versions] == [
            ("Ubuntu 22.04", "Ubuntu", "22.04", "ubuntu", 1),
            ("macOS 13.1", "macOS", "13.1", "darwin", 3),
        ]

        team = await repo.os_versions(admin_filter, team_id=t1.id)
        assert [(v.name, v.hosts_count) for v in team.os_versions] == [("macOS 13.1", 2)]

        empty = await repo.os_versions(admin_filter, team_id=t2.id)
        assert empty.os_versions == []
        assert empty.counts_updated_at == now

    async def test_filters(self, db_session, admin_filter, now):
        await self._fleet(db_session)
        repo = AggregatesRepository(db_session)
        await repo.update_os_versions(now=now)

        assert [v.name for v in (await repo.os_versions(admin_filter, platform="ubuntu")).os_versions] == ["Ubuntu 22.04"]
        assert [v.name for v in (await repo.os_versions(admin_filter, name="macOS")).os_versions] == ["macOS 13.1"]
        assert (await repo.os_versions(admin_filter, name="macOS", version="14.0")).os_versions == []

    async def test_unknown_team(self, db_session, admin_filter):
        with pytest.raises(NotFoundError):
            await AggregatesRepository(db_session).os_versions(admin_filter, team_id=999)

    async def test_not_computed_yet(self, db_session, admin_filter):
        result = await AggregatesRepository(db_session).os_versions(admin_filter)
        assert result.os_versions == []
        assert result.counts_updated_at is None


@pytest.mark.asyncio
class TestRollupAccess:
    async def _rollups(self, session, now):
        teams = TeamRepository(session)
        mine = await teams.new_team("mine")
        secret = await teams.new_team("secret")
        hosts = HostRepository(session)
        host = await hosts.new_host(hostname="hidden", team_id=secret.id)
        mdm = MDMMunkiRepository(session)
        await mdm.set_or_update_munki_info(host.id, "6.1", errors=["secret-error"])
        await mdm.set_or_update_mdm_data(host.id, True, "https://kandji.io", True)
        await OperatingSystemRepository(session).update_host_operating_system(
            host.id, OperatingSystem(name="macOS", version="14.1", platform="darwin")
        )
        repo = AggregatesRepository(session)
        await repo.generate_aggregated_munki_and_mdm(now=now)
        await repo.update_os_versions(now=now)
        return mine, secret

    async def test_team_user_reads_only_own_team(self, db_session, now):
        mine, secret = await self._rollups(db_session, now)
        maintainer = TeamFilter(
            user=User(id=2, teams=[UserTeam(team_id=mine.id, role=Role.MAINTAINER)])
        )
        repo = AggregatesRepository(db_session)

        issues, _ = await repo.aggregated_munki_issues(maintainer, mine.id)
        assert issues == []
        assert (await repo.os_versions(maintainer, team_id=mine.id)).os_versions == []

        for read in (
            repo.aggregated_munki_versions,
            repo.aggregated_munki_issues,
            repo.aggregated_mdm_status,
            repo.aggregated_mdm_solutions,
        ):
            with pytest.raises(ForbiddenError):
                await read(maintainer, secret.id)
            with pytest.raises(ForbiddenError):
                await read(maintainer)
        with pytest.raises(ForbiddenError):
            await repo.os_versions(maintainer, team_id=secret.id)
        with pytest.raises(ForbiddenError):
            await repo.os_versions(maintainer)

    async def test_observers_need_include_observer(self, db_session, now):
        mine, _ = await self._rollups(db_session, now)
        repo = AggregatesRepository(db_session)
        team_observer = User(id=3, teams=[UserTeam(team_id=mine.id, role=Role.OBSERVER)])

        with pytest.raises(ForbiddenError):
            await repo.aggregated_mdm_status(TeamFilter(user=team_observer), mine.id)
        status, _ = await repo.aggregated_mdm_status(
            TeamFilter(user=team_observer, include_observer=True), mine.id
        )
        assert status.hosts_count == 0

        global_observer = TeamFilter(user=User(id=4, global_role=Role.OBSERVER), include_observer=True)
        solutions, _ = await repo.aggregated_mdm_solutions(global_observer)
        assert [s.name for s in solutions] == ["Kandji"]

    async def test_anonymous_reads_nothing(self, db_session, now):
        await self._rollups(db_session, now)
        with pytest.raises(ForbiddenError):
            await AggregatesRepository(db_session).aggregated_munki_versions(TeamFilter(user=None))


@pytest.mark.asyncio
class TestPolicyViolationDays:
    async def _fleet(self, session):
        hosts = HostRepository(session)
        h1 = await hosts.new_host(hostname="h1")
        h2 = await hosts.new_host(hostname="h2")
        policies = PolicyRepository(session)
        p1 = await policies.new_global_policy("p1", "select 1")
        p2 = await policies.new_global_policy("p2", "select 1")
        await policies.record_policy_query_executions(h1.id, {p1.id: False, p2.id: True}, utcnow())
        await policies.record_policy_query_executions(h2.id, {p1.id: False, p2.id: None}, utcnow())

    async def test_first_increment_is_immediate(self, db_session, now):
        await self._fleet(db_session)
        repo = AggregatesRepository(db_session)

        assert await repo.increment_policy_violation_days(now=now) is True
        days = await repo.policy_violation_days()
        assert (days.actual, days.possible) == (2, 4)
        assert days.updated_at == now

    async def test_at_most_once_a_day(self, db_session, now):
        await self._fleet(db_session)
        repo = AggregatesRepository(db_session)

        assert await repo.increment_policy_violation_days(now=now) is True
        assert await repo.increment_policy_violation_days(now=now + timedelta(hours=23)) is False
        assert (await repo.policy_violation_days()).actual == 2

        assert await repo.increment_policy_violation_days(now=now + timedelta(days=1)) is True
        days = await repo.policy_violation_days()
        assert (days.actual, days.possible) == (4, 8)

    async def test_resets_after_a_week(self, db_session, now):
        await self._fleet(db_session)
        repo = AggregatesRepository(db_session)

        await repo.initialize_policy_violation_days(now=now)
        for day in range(7):
            assert await repo.increment_policy_violation_days(now=now + timedelta(days=day))
        assert (await repo.policy_violation_days()).actual == 14

        assert await repo.increment_policy_violation_days(now=now + timedelta(days=7))
        days = await repo.policy_violation_days()
        assert (days.actual, days.possible) == (2, 4)

    async def test_initialize_is_idempotent(self, db_session, now):
        repo = AggregatesRepository(db_session)
        await repo.initialize_policy_violation_days(now=now)
        await repo.initialize_policy_violation_days(now=now + timedelta(days=3))
        days = await repo.policy_violation_days()
        assert (days.actual, days.possible) == (0, 0)
        assert days.updated_at == now - timedelta(days=1)

    async def test_missing_row_reads_as_zero(self, db_session):
        days = await AggregatesRepository(db_session).policy_violation_days()
        assert (days.actual, days.possible, days.updated_at) == (0, 0, None)
