"""Cross-tenant user locator.

Finds which database owns a login. The main database is checked first for
system-level super admins; then every active agency database is scanned in
registry order until one holds a user whose password verifies.

    Start -> CheckingSuperAdmin -> Found(super admin)
                                -> SearchingTenants -> Found(tenant user)
                                                    -> ExhaustedNotFound

Failures local to one agency database (missing database, unreachable host,
timeouts, query errors) are logged and skipped so one bad tenant never
blocks authentication against the others. Only a failure of the main
database itself propagates.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import SQLAlchemyError

from src.buildflow.auth.queries import (
    CredentialRow,
    ProfileRow,
    fetch_profile,
    fetch_roles,
    fetch_system_roles,
    find_credential,
    find_super_admin,
    touch_last_sign_in,
)
from src.buildflow.auth.registry import TenantRow, list_active_tenants
from src.buildflow.config import Settings, get_settings
from src.buildflow.core.exceptions import (
    MainDatabaseError,
    TenantUnavailableError,
    ValidationError,
    sqlstate_of,
)
from src.buildflow.core.monitoring import (
    login_scan_duration_seconds,
    tenant_pools,
    tenant_scan_failures_total,
)
from src.buildflow.core.rbac import SUPER_ADMIN_ROLE
from src.buildflow.core.schema_repair import USER_OPTIONAL_COLUMNS, ensure_optional_columns
from src.buildflow.core.security import CredentialVerifier

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncConnection

    from src.buildflow.core.database import ConnectionPoolManager

logger = structlog.get_logger(__name__)

MAX_EMAIL_LENGTH = 320
MAX_PASSWORD_LENGTH = 1024


@dataclass(frozen=True)
class LocatedUser:
    """A verified login and the database that owns it.

    ``tenant`` is None for super admins, who live in the main database.
    """

    user: CredentialRow
    tenant: TenantRow | None
    profile: ProfileRow | None = None
    roles: list[str] = field(default_factory=list)

    @property
    def is_super_admin(self) -> bool:
        return self.tenant is None


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


class UserLocator:
    """Locate and verify a user across the main and agency databases.

    Args:
        pool_manager: Source of the main engine and per-agency engines.
        settings: Timeouts and reserved database prefixes.
    """

    def __init__(self, pool_manager: ConnectionPoolManager, settings: Settings | None = None) -> None:
        self._pools = pool_manager
        self._settings = settings or get_settings()
        # Agency databases whose users table has already been repaired
        self._repaired: set[str] = set()

    async def locate(self, email: str, password: str) -> LocatedUser | None:
        """Return the first database's verified user, or None.

        Raises:
            ValidationError: If email or password is empty.
            MainDatabaseError: If the main database cannot be used.
        """
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email is required")
        if not password:
            raise ValidationError("Password is required")
        if len(normalized) > MAX_EMAIL_LENGTH:
            raise ValidationError(f"Email must be at most {MAX_EMAIL_LENGTH} characters")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at most {MAX_PASSWORD_LENGTH} characters")

        start_time = time.perf_counter()
        try:
            found = await self._check_super_admin_and_list(normalized, password)
            if isinstance(found, LocatedUser):
                return found
            return await self._search_tenants(found, normalized, password)
        finally:
            login_scan_duration_seconds.observe(time.perf_counter() - start_time)

    # ── Main database ───────────────────────────────────────────────────────

    async def _check_super_admin_and_list(
        self, email: str, password: str
    ) -> LocatedUser | list[TenantRow]:
        """Super-admin check, then the agency list, on one main connection."""
        try:
            async with self._pools.main_engine.begin() as conn:
                located = await self._check_super_admin(conn, email, password)
                if located is not None:
                    return located
                return await list_active_tenants(conn)
        except MainDatabaseError:
            raise
        except (SQLAlchemyError, OSError) as exc:
            raise MainDatabaseError(f"Main database unavailable: {exc}") from exc

    async def _check_super_admin(
        self, conn: AsyncConnection, email: str, password: str
    ) -> LocatedUser | None:
        try:
            async with conn.begin_nested():
                found = await find_super_admin(conn, email)
        except SQLAlchemyError as exc:
            # Missing tables etc. mean "not a super admin", not a fatal error
            logger.warning("auth.super_admin_check_failed", error=str(exc))
            return None

        if found is None:
            return None

        user, profile = found
        verifier = CredentialVerifier.for_connection(conn)
        if not await verifier.verify(password, user.password_hash):
            logger.info("auth.super_admin_password_mismatch")
            return None

        roles = [r.role for r in await fetch_system_roles(conn, user.id)]
        if SUPER_ADMIN_ROLE not in roles:
            roles.insert(0, SUPER_ADMIN_ROLE)
        await touch_last_sign_in(conn, user.id)
        return LocatedUser(user=user, tenant=None, profile=profile, roles=roles)

    # ── Agency databases ────────────────────────────────────────────────────

    def _is_reserved(self, database_identifier: str) -> bool:
        return any(database_identifier.startswith(p) for p in self._settings.reserved_database_prefixes)

    async def _search_tenants(
        self, tenants: list[TenantRow], email: str, password: str
    ) -> LocatedUser | None:
        if not tenants:
            return None

        for tenant in tenants:
            identifier = (tenant.database_identifier or "").strip()
            if not identifier or self._is_reserved(identifier):
                continue

            try:
                located = await asyncio.wait_for(
                    self._search_tenant(tenant, identifier, email, password),
                    timeout=self._settings.TENANT_SCAN_TIMEOUT_SECONDS,
                )
            except asyncio.TimeoutError:
                self._record_unavailable(TenantUnavailableError(identifier, "scan timed out"))
                continue
            except TenantUnavailableError as exc:
                self._record_unavailable(exc)
                continue
            finally:
                tenant_pools.set(self._pools.pool_count)

            if located is not None:
                return located

        return None

    async def _search_tenant(
        self, tenant: TenantRow, identifier: str, email: str, password: str
    ) -> LocatedUser | None:
        try:
            engine = await self._pools.get_pool(identifier)
            async with engine.begin() as conn:
                if identifier not in self._repaired:
                    await ensure_optional_columns(conn, "users", USER_OPTIONAL_COLUMNS)
                located = await self._match_in_tenant(conn, tenant, email, password)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TenantUnavailableError(identifier, str(exc), sqlstate_of(exc)) from exc

        # DDL is transactional: the repair only sticks once the block has committed
        self._repaired.add(identifier)
        return located

    async def _match_in_tenant(
        self,
        conn: AsyncConnection,
        tenant: TenantRow,
        email: str,
        password: str,
    ) -> LocatedUser | None:
        identifier = tenant.database_identifier
        user = await find_credential(conn, email)
        if user is None:
            return None
        if not user.is_active:
            logger.info("auth.inactive_user_skipped", database=identifier)
            return None
        if not user.password_hash:
            logger.warning("auth.user_without_password_hash", database=identifier)
            return None

        verifier = CredentialVerifier.for_connection(conn)
        if not await verifier.verify(password, user.password_hash):
            return None

        profile = await fetch_profile(conn, user.id)
        roles = await fetch_roles(conn, user.id, tenant.id)
        await touch_last_sign_in(conn, user.id)

        return LocatedUser(
            user=user,
            tenant=tenant,
            profile=profile,
            roles=[r.role for r in roles],
        )

    def _record_unavailable(self, exc: TenantUnavailableError) -> None:
        if exc.is_missing_database:
            # Stale registry rows for dropped databases are expected; stay quiet
            tenant_scan_failures_total.labels(reason="missing_database").inc()
            logger.debug("auth.tenant_database_missing", database=exc.database_identifier)
            return

        tenant_scan_failures_total.labels(reason="unavailable").inc()
        logger.warning(
            "auth.tenant_unavailable",
            database=exc.database_identifier,
            sqlstate=exc.sqlstate,
            error=str(exc.__cause__ or exc),
        )
