"""Test fixtures for cross-tenant authentication tests.

Provides:
- Settings with a signing secret and a short per-tenant scan timeout
- A fake main database, pool manager and UserLocator (see tests/fakes.py)
- add_tenant(): register an agency and create its database in one step
- FastAPI app and async HTTP client wired to the fakes
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator

os.environ.setdefault("JWT_SECRET_KEY", "test-signing-secret-0123456789abcdef")
os.environ.setdefault("ENVIRONMENT", "development")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from src.buildflow.auth.locator import UserLocator  # noqa: E402
from src.buildflow.config import Settings, get_settings  # noqa: E402
from tests.fakes import FakeDatabase, FakePoolManager  # noqa: E402

get_settings.cache_clear()

TEST_SECRET = os.environ["JWT_SECRET_KEY"]


@pytest.fixture
def settings() -> Settings:
    """Settings with a signing secret and a short per-tenant scan timeout."""
    return Settings(
        JWT_SECRET_KEY=TEST_SECRET,
        TENANT_SCAN_TIMEOUT_SECONDS=0.2,
        RESERVED_DATABASE_PREFIXES="test_",
    )


@pytest.fixture
def main_db() -> FakeDatabase:
    return FakeDatabase(name="buildflow_db")


@pytest.fixture
def pool_manager(main_db) -> FakePoolManager:
    return FakePoolManager(main_db)


@pytest.fixture
def locator(pool_manager, settings) -> UserLocator:
    return UserLocator(pool_manager, settings)


@pytest.fixture
def add_tenant(main_db, pool_manager):
    """Register an agency in the main database and create its database."""

    def _add(agency_id: str, database_name: str | None = None, **kwargs) -> FakeDatabase:
        database_name = database_name or f"agency_{agency_id}"
        main_db.add_agency(agency_id, database_name, **kwargs)
        database = FakeDatabase(name=database_name)
        pool_manager.tenants[database_name] = database
        return database

    return _add


@pytest_asyncio.fixture
async def client(pool_manager, locator) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the app, with the fakes on app.state.

    ASGITransport does not run the lifespan, so the state it would set is
    installed here instead.
    """
    from src.buildflow.main import create_app

    application = create_app()
    application.state.pool_manager = pool_manager
    application.state.user_locator = locator

    transport = ASGITransport(app=application)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
