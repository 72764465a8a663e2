"""Authentication API endpoints.

Provides login across every agency database, current identity from the
token, and the caller's roles. All endpoints except login require a valid
Bearer token.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from src.buildflow.api.deps import get_current_claims, get_current_roles, get_user_locator
from src.buildflow.auth.locator import UserLocator
from src.buildflow.core.exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    MainDatabaseError,
    ValidationError,
)
from src.buildflow.core.rbac import highest_role
from src.buildflow.core.security import SessionClaims
from src.buildflow.schemas.auth import LoginRequest, LoginResponse, MeResponse, RolesResponse
from src.buildflow.services.authentication import authenticate

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


@router.post("/login", response_model=LoginResponse)
async def login(body: LoginRequest, locator: UserLocator = Depends(get_user_locator)):
    """Authenticate a user and return a signed session token.

    The user may live in any agency database or, for super admins, in the
    main database. No tenant hint is needed.
    """
    try:
        session = await authenticate(locator, body.email, body.password)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except AuthenticationFailure:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=AuthenticationFailure.MESSAGE,
        )
    except (MainDatabaseError, ConfigurationError):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service unavailable",
        )

    return LoginResponse(token=session.token, user=session.user)


@router.get("/me", response_model=MeResponse)
async def get_me(claims: SessionClaims = Depends(get_current_claims)):
    """Return current identity and routing target from the token claims."""
    return MeResponse(
        user_id=claims.user_id,
        email=claims.email,
        tenant_id=claims.tenant_id,
        tenant_database_identifier=claims.tenant_database_identifier,
        is_super_admin=claims.is_super_admin,
        expires_at=claims.expires_at,
    )


@router.get("/roles", response_model=RolesResponse)
async def get_roles(roles: list[str] = Depends(get_current_roles)):
    """Return the caller's roles as stored in the caller's database."""
    return RolesResponse(roles=roles, highest_role=highest_role(roles))
