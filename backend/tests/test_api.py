"""Tests for API endpoints: listing, summaries, rollups and host details."""

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from hoststate.api.routes.hosts import get_team_filter
from hoststate.db.repositories.aggregates import AggregatesRepository
from hoststate.db.repositories.host_details import HostDetailsRepository
from hoststate.db.repositories.hosts import HostRepository
from hoststate.db.repositories.mdm_munki import MDMMunkiRepository
from hoststate.db.repositories.operating_systems import OperatingSystemRepository
from hoststate.db.repositories.teams import TeamRepository
from hoststate.db.sql import utcnow
from hoststate.main import app
from hoststate.schemas.filters import Role, TeamFilter, User, UserTeam
from hoststate.schemas.hosts import OperatingSystem


@pytest.mark.asyncio
class TestHealthEndpoints:
    """Test basic health endpoints."""

    async def test_root(self, client):
        resp = await client.get("/")
        assert resp.status_code == 200
        data = resp.json()
        assert data["service"] == "Host State API"
        assert data["status"] == "running"

    async def test_openapi_docs(self, client):
        resp = await client.get("/openapi.json")
        assert resp.status_code == 200
        paths = resp.json()["paths"]
        assert "/api/hosts" in paths
        assert "/api/hosts/summary" in paths
        assert "/api/hosts/{host_id}" in paths

    async def test_requires_identity(self):
        app.dependency_overrides.clear()
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/api/hosts")
        assert resp.status_code == 401


@pytest.mark.asyncio
class TestHostEndpoints:
    async def test_list_hides_node_key(self, client, db_session):
        hosts = HostRepository(db_session)
        await hosts.new_host(hostname="a", node_key="secret-a")
        await hosts.new_host(hostname="b", node_key="secret-b")

        resp = await client.get("/api/hosts")
        assert resp.status_code == 200
        listed = resp.json()["hosts"]
        assert [h["hostname"] for h in listed] == ["a", "b"]
        assert all("node_key" not in h for h in listed)
        assert listed[0]["display_name"] == "a"

    async def test_list_options_from_query(self, client, db_session):
        hosts = HostRepository(db_session)
        for name in ("c", "a", "b"):
            await hosts.new_host(hostname=name)

        resp = await client.get(
            "/api/hosts",
            params={"order_key": "hostname", "order_direction": "desc", "per_page": 2},
        )
        assert [h["hostname"] for h in resp.json()["hosts"]] == ["c", "b"]

        resp = await client.get("/api/hosts/count", params={"query": "a"})
        assert resp.json() == {"count": 1}

    async def test_additional_info_filters(self, client, db_session):
        hosts = HostRepository(db_session)
        host = await hosts.new_host(hostname="a")
        await hosts.save_host_additional(host.id, {"owner": "it", "rack": 2})

        resp = await client.get("/api/hosts", params={"additional_info_filters": "owner, nope"})
        [listed] = resp.json()["hosts"]
        assert listed["additional"] == {"owner": "it", "nope": None}

    async def test_bad_filters_are_rejected(self, client):
        resp = await client.get("/api/hosts", params={"status": "asleep"})
        assert resp.status_code == 422
        resp = await client.get("/api/hosts/count", params={"mdm_enrollment_status": "maybe"})
        assert resp.status_code == 422
        resp = await client.get("/api/hosts", params={"order_key": "node_key"})
        assert resp.status_code == 422
        resp = await client.get("/api/hosts", params={"low_disk_space": 500})
        assert resp.status_code == 422

    async def test_search(self, client, db_session):
        hosts = HostRepository(db_session)
        keep = await hosts.new_host(hostname="web-1", node_key="k1")
        skip = await hosts.new_host(hostname="web-2", node_key="k2")
        await hosts.new_host(hostname="db-1")

        resp = await client.get(
            "/api/hosts/search", params={"query": "web", "excluded_host_ids": [skip.id]}
        )
        assert resp.status_code == 200
        found = resp.json()["hosts"]
        assert [h["id"] for h in found] == [keep.id]
        assert "node_key" not in found[0]

    async def test_get_host(self, client, db_session):
        hosts = HostRepository(db_session)
        host = await hosts.new_host(hostname="mac", node_key="secret", platform="darwin")
        await HostDetailsRepository(db_session).set_or_update_host_disks_space(host.id, 20.0, 10.0)

        resp = await client.get(f"/api/hosts/{host.id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["hostname"] == "mac"
        assert data["gigs_disk_space_available"] == 20.0
        assert data["issues"] == {"failing_policies_count": 0, "total_issues_count": 0}
        assert data["mdm"] is None
        assert "node_key" not in data

    async def test_get_missing_host(self, client):
        resp = await client.get("/api/hosts/9999")
        assert resp.status_code == 404


@pytest.mark.asyncio
class TestSummaryEndpoints:
    async def test_status_summary(self, client, db_session):
        team = await TeamRepository(db_session).new_team("team1")
        hosts = HostRepository(db_session)
        now = utcnow()
        await hosts.new_host(hostname="a", platform="darwin", distributed_interval=10, seen_time=now)
        await hosts.new_host(
            hostname="b", platform="ubuntu", team_id=team.id,
            created_at=now - timedelta(days=60), seen_time=now - timedelta(days=45),
        )

        data = (await client.get("/api/hosts/summary")).json()
        assert data["totals_hosts_count"] == 2
        assert data["online_count"] == 1
        assert data["offline_count"] == 1
        assert data["mia_count"] == 1
        assert data["all_linux_count"] == 1
        assert data["low_disk_space_count"] is None

        data = (await client.get("/api/hosts/summary", params={"team_id": team.id})).json()
        assert data["team_id"] == team.id
        assert data["totals_hosts_count"] == 1
        assert [p["platform"] for p in data["platforms"]] == ["ubuntu"]

        data = (await client.get("/api/hosts/summary", params={"low_disk_space": 10})).json()
        assert data["low_disk_space_count"] == 0

    async def test_mdm_and_munki_rollups(self, client, db_session):
        host = await HostRepository(db_session).new_host(hostname="a")
        mdm = MDMMunkiRepository(db_session)
        await mdm.set_or_update_mdm_data(host.id, True, "https://kandji.io", True)
        await mdm.set_or_update_munki_info(host.id, "6.1", errors=["oops"])

        data = (await client.get("/api/hosts/summary/mdm")).json()
        assert data["counts_updated_at"] is None
        assert data["mobile_device_management_solution"] == []

        await AggregatesRepository(db_session).generate_aggregated_munki_and_mdm()

        data = (await client.get("/api/hosts/summary/mdm")).json()
        assert data["counts_updated_at"] is not None
        status = data["mobile_device_management_enrollment_status"]
        assert status["enrolled_automated_hosts_count"] == 1
        assert [s["name"] for s in data["mobile_device_management_solution"]] == ["Kandji"]

        data = (await client.get("/api/hosts/summary/munki")).json()
        assert data["versions"] == [{"version": "6.1", "hosts_count": 1}]
        assert [i["name"] for i in data["issues"]] == ["oops"]

    async def test_os_versions(self, client, db_session):
        host = await HostRepository(db_session).new_host(hostname="a")
        await OperatingSystemRepository(db_session).update_host_operating_system(
            host.id, OperatingSystem(name="Windows 11 Pro", version="22H2", platform="windows")
        )
        await AggregatesRepository(db_session).update_os_versions()

        data = (await client.get("/api/hosts/os_versions", params={"platform": "windows"})).json()
        assert [v["name"] for v in data["os_versions"]] == ["Windows 11 Pro 22H2"]
        assert data["os_versions"][0]["hosts_count"] == 1

        resp = await client.get("/api/hosts/os_versions", params={"team_id": 404})
        assert resp.status_code == 404

    async def test_rollups_follow_team_filter(self, client, db_session):
        teams = TeamRepository(db_session)
        mine = await teams.new_team("mine")
        secret = await teams.new_team("secret")
        host = await HostRepository(db_session).new_host(hostname="hidden", team_id=secret.id)
        mdm = MDMMunkiRepository(db_session)
        await mdm.set_or_update_munki_info(host.id, "6.1", errors=["secret-error"])
        await mdm.set_or_update_mdm_data(host.id, True, "https://kandji.io", True)
        await AggregatesRepository(db_session).generate_aggregated_munki_and_mdm()
        await AggregatesRepository(db_session).update_os_versions()

        maintainer = TeamFilter(
            user=User(id=2, teams=[UserTeam(team_id=mine.id, role=Role.MAINTAINER)])
        )
        app.dependency_overrides[get_team_filter] = lambda: maintainer

        data = (await client.get("/api/hosts/summary/munki", params={"team_id": mine.id})).json()
        assert data["issues"] == []
        assert data["versions"] == []

        for path in ("/api/hosts/summary/munki", "/api/hosts/summary/mdm", "/api/hosts/os_versions"):
            resp = await client.get(path, params={"team_id": secret.id})
            assert resp.status_code == 403
            resp = await client.get(path)
            assert resp.status_code == 403
