"""FastAPI dependency injection for authentication and database routing.

These dependencies are used in endpoint function signatures to inject the
pool manager, the decoded session claims, a connection routed to the
caller's database, and role guards.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

import structlog
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncConnection

from src.buildflow.auth.locator import UserLocator
from src.buildflow.auth.queries import fetch_roles, fetch_system_roles
from src.buildflow.core.database import ConnectionPoolManager
from src.buildflow.core.exceptions import ConfigurationError, InvalidTokenError
from src.buildflow.core.rbac import highest_role, is_authorized
from src.buildflow.core.security import SessionClaims, decode_session_token

logger = structlog.get_logger(__name__)

AGENCY_DATABASE_HEADER = "X-Agency-Database"

# Tokens longer than this are rejected before any decoding
MAX_TOKEN_LENGTH = 10000


def get_pool_manager(request: Request) -> ConnectionPoolManager:
    """The process-wide pool manager created in the app lifespan."""
    return request.app.state.pool_manager


def get_user_locator(request: Request) -> UserLocator:
    return request.app.state.user_locator


async def get_current_claims(request: Request) -> SessionClaims:
    """Decode the Bearer token from the Authorization header.

    Raises:
        HTTPException(401): Missing, malformed, expired or foreign token.
        HTTPException(503): Signing secret not configured.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or expired authentication token",
        headers={"WWW-Authenticate": "Bearer"},
    )

    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication token is required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token = auth_header[7:].strip()
    if not token or len(token) > MAX_TOKEN_LENGTH:
        raise credentials_exception

    try:
        return decode_session_token(token)
    except InvalidTokenError:
        raise credentials_exception
    except ConfigurationError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        )


async def get_routed_connection(
    claims: SessionClaims = Depends(get_current_claims),
    pool_manager: ConnectionPoolManager = Depends(get_pool_manager),
) -> AsyncGenerator[AsyncConnection, None]:
    """Borrow a connection from the pool the caller's claims select."""
    engine = await pool_manager.resolve(claims)
    async with engine.connect() as conn:
        yield conn


async def get_current_roles(
    claims: SessionClaims = Depends(get_current_claims),
    conn: AsyncConnection = Depends(get_routed_connection),
) -> list[str]:
    """Roles of the caller, read from the caller's own database."""
    if claims.is_super_admin:
        rows = await fetch_system_roles(conn, claims.user_id)
    else:
        rows = await fetch_roles(conn, claims.user_id, claims.tenant_id)
    return [r.role for r in rows]


async def require_agency_context(
    request: Request,
    claims: SessionClaims = Depends(get_current_claims),
) -> SessionClaims:
    """Ensure the caller is bound to an agency database.

    If the client also sends X-Agency-Database it must match the token.

    Raises:
        HTTPException(403): No agency in the token, or header mismatch.
    """
    if not claims.tenant_database_identifier:
        logger.warning("auth.agency_context_missing", user_id=claims.user_id, path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Agency context is required",
        )

    header_database = request.headers.get(AGENCY_DATABASE_HEADER)
    if header_database and header_database != claims.tenant_database_identifier:
        logger.warning(
            "auth.agency_context_mismatch",
            user_id=claims.user_id,
            token_agency=claims.tenant_database_identifier,
            header_agency=header_database,
            path=request.url.path,
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Agency context mismatch",
        )
    return claims


def require_role(*roles: str, allow_higher: bool = True) -> Callable:
    """Guard that the caller's highest role is one of ``roles``.

    With ``allow_higher`` (the default) more senior roles pass as well.

    Example:
        @router.get("/payroll")
        async def payroll(roles: list[str] = Depends(require_role("finance_manager"))):
            ...
    """
    required = list(roles)

    async def _guard(
        request: Request,
        claims: SessionClaims = Depends(get_current_claims),
        user_roles: list[str] = Depends(get_current_roles),
    ) -> list[str]:
        if not user_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User has no assigned roles",
            )
        if not is_authorized(user_roles, required, allow_higher=allow_higher):
            logger.warning(
                "auth.access_denied",
                user_id=claims.user_id,
                user_role=highest_role(user_roles),
                required_roles=required,
                path=request.url.path,
                method=request.method,
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role(s): {', '.join(required)}",
            )
        return user_roles

    return _guard
