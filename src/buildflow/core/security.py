"""Password verification and JWT session tokens.

Provides the security primitives the login flow and every later request
depend on:
- CredentialVerifier: ordered password-hash strategies (pgcrypto crypt(),
  then bcrypt) bridging the hash-scheme migration
- issue_session_token() / decode_session_token(): the signed claim set that
  routes each request to its database

Uses bcrypt directly (not passlib) for Python 3.13 compatibility.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from src.buildflow.config import Settings, get_settings
from src.buildflow.core.exceptions import ConfigurationError, InvalidTokenError

if TYPE_CHECKING:
    from src.buildflow.auth.queries import CredentialRow
    from src.buildflow.auth.registry import TenantRow

logger = logging.getLogger(__name__)

# A strategy answers "does plain match hashed?"; raising means "could not tell"
PasswordStrategy = Callable[[str, str], Awaitable[bool]]

# ── Password Hashing ──────────────────────────────────────────────────────────


def hash_password(password: str) -> str:
    """Hash a plaintext password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


async def bcrypt_strategy(plain: str, hashed: str) -> bool:
    """Verify a plaintext password against its bcrypt hash.

    Raises ValueError when ``hashed`` is not a bcrypt hash.
    """
    return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))


class PgCryptoStrategy:
    """Database-native verification: ``hash = crypt(plain, hash)``.

    Hashes created with ``crypt(password, gen_salt('bf'))`` are
    self-describing, so recomputing crypt() with the stored hash as salt
    reproduces it on a match. The check runs inside a SAVEPOINT so a missing
    pgcrypto extension does not abort the caller's transaction.
    """

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    async def __call__(self, plain: str, hashed: str) -> bool:
        async with self._conn.begin_nested():
            result = await self._conn.execute(
                text("SELECT (:hash = crypt(:plain, :hash)) AS match"),
                {"hash": hashed, "plain": plain},
            )
            return bool(result.scalar())


class CredentialVerifier:
    """Try each password strategy in order until one reports a match.

    A strategy that raises counts as "no match" and the next one is tried;
    verification never raises. A missing hash or password is rejected
    without invoking any strategy.
    """

    def __init__(self, strategies: Sequence[PasswordStrategy]) -> None:
        self._strategies = tuple(strategies)

    @classmethod
    def for_connection(cls, conn: AsyncConnection) -> CredentialVerifier:
        """Standard chain: pgcrypto on ``conn`` first, bcrypt as fallback."""
        return cls([PgCryptoStrategy(conn), bcrypt_strategy])

    async def verify(self, plain: str | None, stored_hash: str | None) -> bool:
        if not stored_hash or not plain:
            return False

        for strategy in self._strategies:
            try:
                if await strategy(plain, stored_hash):
                    return True
            except Exception as exc:
                # Never log the hash or the password itself
                logger.debug(
                    "Password strategy %s could not verify: %s",
                    getattr(strategy, "__name__", type(strategy).__name__),
                    type(exc).__name__,
                )
        return False


# ── JWT Session Tokens ────────────────────────────────────────────────────────


class SessionClaims(BaseModel):
    """Decoded session token claims.

    ``tenant_id``, ``tenant_database_identifier`` and ``is_super_admin`` are
    the contract every later request uses to pick a database.
    """

    user_id: str
    email: str
    tenant_id: str | None = None
    tenant_database_identifier: str | None = None
    is_super_admin: bool = False
    issued_at: datetime
    expires_at: datetime


def _signing_secret(settings: Settings) -> str:
    if not settings.JWT_SECRET_KEY:
        raise ConfigurationError("JWT_SECRET_KEY environment variable is required")
    return settings.JWT_SECRET_KEY


def ensure_signing_secret(settings: Settings | None = None) -> None:
    """Fail fast at startup when the signing secret is not configured."""
    _signing_secret(settings or get_settings())


def issue_session_token(
    user: CredentialRow,
    tenant: TenantRow | None,
    settings: Settings | None = None,
) -> str:
    """Sign a session token for ``user``.

    ``tenant`` is None for super admins, who are routed to the main database.

    Raises:
        ConfigurationError: If JWT_SECRET_KEY is not configured.
    """
    settings = settings or get_settings()
    secret = _signing_secret(settings)

    tenant_id = str(tenant.id) if tenant is not None and tenant.id is not None else None
    database_identifier = tenant.database_identifier if tenant is not None else None
    now = datetime.now(timezone.utc)

    claims = {
        "sub": str(user.id),
        "user_id": str(user.id),
        "email": user.email,
        "tenant_id": tenant_id,
        "tenant_database_identifier": database_identifier,
        "is_super_admin": database_identifier is None,
        "iat": now,
        "exp": now + timedelta(hours=settings.JWT_EXPIRE_HOURS),
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
    }
    return jwt.encode(claims, secret, algorithm=settings.JWT_ALGORITHM)


def decode_session_token(token: str, settings: Settings | None = None) -> SessionClaims:
    """Verify signature, expiry, issuer and audience and return the claims.

    Raises:
        ConfigurationError: If JWT_SECRET_KEY is not configured.
        InvalidTokenError: If the token is invalid for any reason.
    """
    settings = settings or get_settings()
    secret = _signing_secret(settings)

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
    except JWTError as exc:
        raise InvalidTokenError("Invalid or expired authentication token") from exc

    user_id = payload.get("user_id") or payload.get("sub")
    email = payload.get("email")
    if not user_id or not email or "iat" not in payload or "exp" not in payload:
        raise InvalidTokenError("Token is missing required claims")

    database_identifier = payload.get("tenant_database_identifier")
    return SessionClaims(
        user_id=str(user_id),
        email=email,
        tenant_id=payload.get("tenant_id"),
        tenant_database_identifier=database_identifier,
        is_super_admin=bool(payload.get("is_super_admin", database_identifier is None)),
        issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )
