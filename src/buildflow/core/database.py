"""Async SQLAlchemy engines for the main database and every agency database.

Provides:
- ConnectionPoolManager: owns the main engine plus one lazily created engine
  per agency database, keyed by database name
- build_database_url(): derive an agency database URL from DATABASE_URL
- Pool checkout event that resets session state (RESET ALL) so settings from
  a previous borrower never leak into the next one
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from src.buildflow.config import Settings, get_settings

if TYPE_CHECKING:
    from src.buildflow.core.security import SessionClaims

logger = logging.getLogger(__name__)


def build_database_url(base_url: str, database_identifier: str) -> str:
    """Return ``base_url`` with its database name replaced.

    Host, port, user and password are shared by every agency database;
    only the database name differs.
    """
    return make_url(base_url).set(database=database_identifier).render_as_string(hide_password=False)


def _install_checkout_reset(engine: AsyncEngine) -> None:
    # Critical: reset session variables on every connection checkout
    @event.listens_for(engine.sync_engine, "checkout")
    def reset_session_state(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("RESET ALL")
        cursor.close()


class ConnectionPoolManager:
    """Process-wide cache of connection pools, one per database.

    The manager exclusively owns every engine it creates; callers borrow
    connections via ``engine.connect()`` / ``engine.begin()`` and release them
    by leaving the context manager. Tenant pools live for the process
    lifetime and are only disposed at shutdown.

    The read-check-create sequence in get_pool() runs under a single
    asyncio.Lock so concurrent first logins against the same agency never
    build two pools.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._main_engine: AsyncEngine | None = None
        self._pools: dict[str, AsyncEngine] = {}
        self._lock = asyncio.Lock()

    @property
    def main_engine(self) -> AsyncEngine:
        """The main-database engine (agency registry, super admins)."""
        if self._main_engine is None:
            self._main_engine = create_async_engine(
                self._settings.DATABASE_URL,
                pool_size=self._settings.MAIN_POOL_SIZE,
                max_overflow=self._settings.MAIN_MAX_OVERFLOW,
                pool_pre_ping=True,
                echo=False,
            )
            _install_checkout_reset(self._main_engine)
        return self._main_engine

    @property
    def pool_count(self) -> int:
        """Number of agency pools currently cached."""
        return len(self._pools)

    def _create_tenant_engine(self, database_identifier: str) -> AsyncEngine:
        engine = create_async_engine(
            build_database_url(self._settings.DATABASE_URL, database_identifier),
            pool_size=self._settings.TENANT_POOL_SIZE,
            max_overflow=self._settings.TENANT_MAX_OVERFLOW,
            pool_pre_ping=True,
            # asyncpg connect timeout, so an unreachable host fails fast
            connect_args={"timeout": self._settings.TENANT_CONNECT_TIMEOUT_SECONDS},
            echo=False,
        )
        _install_checkout_reset(engine)
        return engine

    async def get_pool(self, database_identifier: str) -> AsyncEngine:
        """Get or create the engine for an agency database.

        Creating an engine does not open a connection; a missing or
        unreachable database only fails when a connection is requested.

        Raises:
            ValueError: If the identifier is empty.
        """
        name = (database_identifier or "").strip()
        if not name:
            raise ValueError("database_identifier must be a non-empty string")

        async with self._lock:
            engine = self._pools.get(name)
            if engine is None:
                engine = self._create_tenant_engine(name)
                self._pools[name] = engine
                logger.info("Created connection pool for agency database %s", name)
            return engine

    async def resolve(self, claims: SessionClaims) -> AsyncEngine:
        """Pick the engine a request carrying ``claims`` must use.

        Super admins live in the main database; every other user is routed
        to the agency database named in the token.
        """
        if claims.is_super_admin or not claims.tenant_database_identifier:
            return self.main_engine
        return await self.get_pool(claims.tenant_database_identifier)

    async def dispose(self) -> None:
        """Dispose of every engine and close all connections."""
        async with self._lock:
            pools = list(self._pools.items())
            self._pools.clear()
        for name, engine in pools:
            try:
                await engine.dispose()
            except Exception:
                logger.warning("Failed to dispose pool for agency database %s", name, exc_info=True)
        if self._main_engine is not None:
            await self._main_engine.dispose()
            self._main_engine = None
