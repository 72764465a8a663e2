"""Authentication service: locate, verify, and issue a session token.

This is the single inbound operation of the auth core. The result carries
the signed token whose claims route every later request, plus the user
payload the login endpoint returns.

Every credential failure (unknown email, wrong password, inactive account,
unreachable agency database) surfaces as the same AuthenticationFailure.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from src.buildflow.auth.locator import LocatedUser, UserLocator, normalize_email
from src.buildflow.config import Settings, get_settings
from src.buildflow.core.exceptions import (
    AuthenticationFailure,
    ConfigurationError,
    MainDatabaseError,
    ValidationError,
)
from src.buildflow.core.monitoring import login_attempts_total
from src.buildflow.core.security import SessionClaims, decode_session_token, issue_session_token
from src.buildflow.schemas.auth import AgencyResponse, ProfileResponse, UserResponse

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AuthenticatedSession:
    token: str
    claims: SessionClaims
    user: UserResponse


def format_user_response(located: LocatedUser) -> UserResponse:
    """Shape a located user for the login response. Never includes the hash."""
    user, tenant, profile = located.user, located.tenant, located.profile
    return UserResponse(
        id=user.id,
        email=user.email,
        email_confirmed=user.email_confirmed,
        is_active=user.is_active,
        created_at=user.created_at,
        updated_at=user.updated_at,
        last_sign_in_at=user.last_sign_in_at,
        profile=ProfileResponse(
            user_id=profile.user_id,
            full_name=profile.full_name,
            phone=profile.phone,
            avatar_url=profile.avatar_url,
        ) if profile is not None else None,
        roles=list(located.roles),
        agency=AgencyResponse(
            id=tenant.id,
            name=tenant.name,
            domain=tenant.domain,
            database_name=tenant.database_identifier,
        ) if tenant is not None else AgencyResponse(),
    )


async def authenticate(
    locator: UserLocator,
    email: str,
    password: str,
    settings: Settings | None = None,
) -> AuthenticatedSession:
    """Authenticate ``email``/``password`` and issue a session token.

    Raises:
        ValidationError: Email or password missing.
        AuthenticationFailure: No database holds a matching, verified user.
        MainDatabaseError: The main database is unreachable.
        ConfigurationError: The signing secret is not configured.
    """
    settings = settings or get_settings()

    try:
        located = await locator.locate(email, password)
    except ValidationError:
        login_attempts_total.labels(outcome="invalid_request").inc()
        raise
    except MainDatabaseError:
        login_attempts_total.labels(outcome="unavailable").inc()
        logger.error("auth.login", result="error", reason="main_database_unavailable", exc_info=True)
        raise

    if located is None:
        login_attempts_total.labels(outcome="failure").inc()
        logger.info("auth.login", result="failure", email=normalize_email(email))
        raise AuthenticationFailure()

    try:
        token = issue_session_token(located.user, located.tenant, settings)
    except ConfigurationError:
        login_attempts_total.labels(outcome="unavailable").inc()
        logger.error("auth.login", result="error", reason="signing_secret_missing")
        raise

    claims = decode_session_token(token, settings)
    login_attempts_total.labels(outcome="success").inc()
    logger.info(
        "auth.login",
        result="success",
        user_id=located.user.id,
        tenant_id=claims.tenant_id,
        is_super_admin=claims.is_super_admin,
    )
    return AuthenticatedSession(token=token, claims=claims, user=format_user_response(located))
