"""Error taxonomy for the authentication and routing core.

Errors local to one tenant database (TenantUnavailableError) are recovered
inside the login scan. Errors global to the subsystem (MainDatabaseError,
ConfigurationError) propagate to the caller as a failure mode distinct from
bad credentials (AuthenticationFailure).
"""

from __future__ import annotations

# SQLSTATE raised by PostgreSQL when the target database does not exist
MISSING_DATABASE_SQLSTATE = "3D000"


class BuildFlowAuthError(Exception):
    """Base class for every error raised by the auth core."""


class ValidationError(BuildFlowAuthError):
    """Login input is missing or malformed. No database was touched."""


class ConfigurationError(BuildFlowAuthError):
    """A required setting (e.g. the JWT signing secret) is not configured."""


class MainDatabaseError(BuildFlowAuthError):
    """The main database could not be reached or queried."""


class AuthenticationFailure(BuildFlowAuthError):
    """Unified credential failure.

    Unknown email, wrong password and inactive account all collapse into this
    one outcome with one message so callers cannot tell them apart.
    """

    MESSAGE = "Invalid email or password"

    def __init__(self) -> None:
        super().__init__(self.MESSAGE)


class InvalidTokenError(BuildFlowAuthError):
    """A session token is malformed, expired, tampered or issued elsewhere."""


class TenantUnavailableError(BuildFlowAuthError):
    """A tenant database failed to connect or answer during the login scan.

    Attributes:
        database_identifier: The agency database name that failed.
        sqlstate: PostgreSQL SQLSTATE of the underlying error, when known.
    """

    def __init__(self, database_identifier: str, reason: str, sqlstate: str | None = None) -> None:
        self.database_identifier = database_identifier
        self.sqlstate = sqlstate
        super().__init__(f"Tenant database {database_identifier!r} unavailable: {reason}")

    @property
    def is_missing_database(self) -> bool:
        return self.sqlstate == MISSING_DATABASE_SQLSTATE


def sqlstate_of(exc: BaseException) -> str | None:
    """Extract a PostgreSQL SQLSTATE from a driver or SQLAlchemy exception.

    SQLAlchemy wraps asyncpg errors in DBAPIError with the adapted driver
    error on ``.orig``; the adapted error carries ``sqlstate``/``pgcode``.
    Raw asyncpg errors carry ``sqlstate`` directly.
    """
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        for attr in ("sqlstate", "pgcode"):
            value = getattr(current, attr, None)
            if isinstance(value, str) and value:
                return value
        orig = getattr(current, "orig", None)
        current = orig if isinstance(orig, BaseException) else current.__cause__
    return None
