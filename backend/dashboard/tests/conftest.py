"""Common test fixtures for dashboard unit tests."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from backend.dashboard.app.dependencies import get_bridge, get_cache, get_session
from backend.dashboard.app.federation import IdentityFederationBridge
from backend.dashboard.app.main import create_app
from backend.dashboard.app.orchestrator import AuthenticationOrchestrator
from backend.dashboard.app.security import TokenIssuer
from backend.dashboard.app.storage import MemoryCache
from backend.dashboard.db.base import Base, create_engine, create_session, dispose_engine

from .utils import FakeIdentityProvider, FixedClock


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """Return a SQLite database URL located in a temporary directory."""

    return f"sqlite+aiosqlite:///{tmp_path / 'dashboard.sqlite3'}"


@pytest_asyncio.fixture
async def db_engine(db_url: str) -> AsyncIterator[AsyncEngine]:
    """Initialise a fresh schema for every test case."""

    engine = create_engine(db_url, echo=False)
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await dispose_engine()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncIterator[AsyncSession]:
    """Yield an :class:`AsyncSession` bound to the test database."""

    session = create_session()
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def bridge(cache: MemoryCache, provider: FakeIdentityProvider) -> IdentityFederationBridge:
    return IdentityFederationBridge(cache, transport=provider.transport)


@pytest.fixture
def orchestrator(
    db_session: AsyncSession,
    cache: MemoryCache,
    bridge: IdentityFederationBridge,
    clock: FixedClock,
) -> AuthenticationOrchestrator:
    return AuthenticationOrchestrator(
        db_session,
        cache=cache,
        bridge=bridge,
        issuer=TokenIssuer(clock=clock),
        clock=clock,
    )


@pytest.fixture
def app(db_session: AsyncSession, cache: MemoryCache, bridge: IdentityFederationBridge):
    """Create a FastAPI test application with database and cache overrides."""

    application = create_app(api_prefix="/api")

    async def _override_session():
        yield db_session

    application.dependency_overrides[get_session] = _override_session
    application.dependency_overrides[get_cache] = lambda: cache
    application.dependency_overrides[get_bridge] = lambda: bridge
    return application
