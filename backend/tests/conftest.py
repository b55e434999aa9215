"""Shared pytest fixtures for host state tests.

Provides:
- Async test database (in-memory SQLite, fresh per test)
- A file-backed SQLite engine for multi-session tests
- Test client (httpx AsyncClient on the FastAPI app)
- Caller identities
"""

import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Force test database
os.environ["HS_DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["HS_SCHEDULER_ENABLED"] = "false"

from hoststate.api.routes.hosts import get_team_filter
from hoststate.db import models as _models  # noqa: F401
from hoststate.db.engine import Base, build_engine, build_session_factory, get_db
from hoststate.main import app
from hoststate.schemas.filters import Role, TeamFilter, User


# ── Database fixtures ─────────────────────────────────────────────────


@pytest_asyncio.fixture
async def test_engine():
    """In-memory database with every table created."""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    factory = build_session_factory(test_engine)
    async with factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    """File-backed database, so separate sessions use separate connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'hoststate.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(file_engine):
    return build_session_factory(file_engine)


# ── Identities ────────────────────────────────────────────────────────


@pytest.fixture
def admin_filter() -> TeamFilter:
    return TeamFilter(user=User(id=1, global_role=Role.ADMIN))


# ── HTTP client ───────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(db_session, admin_filter) -> AsyncGenerator[AsyncClient, None]:
    """Async test client with the DB session and caller identity overridden."""

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_team_filter] = lambda: admin_filter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
