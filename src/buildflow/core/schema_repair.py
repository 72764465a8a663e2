"""Additive schema self-repair for agency databases.

Agency databases are provisioned at different times and the users table
gained columns along the way. Before the login path reads a tenant's users
table it makes sure the optional columns exist, adding any that are missing
with ``ADD COLUMN IF NOT EXISTS``. Nothing here drops or rewrites data.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")
_COLUMN_TYPE = re.compile(r"^[A-Za-z][A-Za-z0-9_ ]*(\(\d+(,\s*\d+)?\))?$")
_DEFAULT = re.compile(r"^(true|false|null|-?\d+(\.\d+)?|'[^']*'|now\(\)|gen_random_uuid\(\))$", re.IGNORECASE)


@dataclass(frozen=True)
class OptionalColumn:
    """A column older tenant databases may lack."""

    name: str
    type: str
    default: str | None = None

    def __post_init__(self) -> None:
        # Definitions are interpolated into DDL, so only plain shapes pass
        if not _IDENTIFIER.match(self.name):
            raise ValueError(f"Invalid column name: {self.name!r}")
        if not _COLUMN_TYPE.match(self.type):
            raise ValueError(f"Invalid column type: {self.type!r}")
        if self.default is not None and not _DEFAULT.match(self.default):
            raise ValueError(f"Invalid column default: {self.default!r}")

    def ddl(self) -> str:
        clause = f'"{self.name}" {self.type}'
        if self.default is not None:
            clause += f" DEFAULT {self.default}"
        return clause


USER_OPTIONAL_COLUMNS: frozenset[OptionalColumn] = frozenset(
    {
        OptionalColumn("two_factor_enabled", "BOOLEAN", "false"),
        OptionalColumn("two_factor_secret", "TEXT"),
        OptionalColumn("password_policy_id", "UUID"),
    }
)


async def ensure_optional_columns(
    conn: AsyncConnection,
    table_name: str,
    columns: Iterable[OptionalColumn],
    schema: str = "public",
) -> set[str]:
    """Add whichever of ``columns`` are missing from ``schema.table_name``.

    Each ALTER runs in its own SAVEPOINT. A failure (for instance another
    process adding the same column concurrently) is logged and swallowed and
    the column is assumed present; this never fails the caller.

    Returns:
        Names of the columns now assumed present.
    """
    if not _IDENTIFIER.match(table_name) or not _IDENTIFIER.match(schema):
        raise ValueError(f"Invalid table reference: {schema}.{table_name}")

    wanted = {c.name: c for c in columns}
    if not wanted:
        return set()

    result = await conn.execute(
        text("""
            SELECT column_name
            FROM information_schema.columns
            WHERE table_schema = :schema
              AND table_name = :table
              AND column_name = ANY(:names)
        """),
        {"schema": schema, "table": table_name, "names": sorted(wanted)},
    )
    present = {row.column_name for row in result.fetchall()}

    for name in sorted(set(wanted) - present):
        column = wanted[name]
        try:
            async with conn.begin_nested():
                await conn.execute(
                    text(f'ALTER TABLE "{schema}"."{table_name}" ADD COLUMN IF NOT EXISTS {column.ddl()}')
                )
            logger.info("Added missing column %s.%s.%s", schema, table_name, name)
        except Exception as exc:
            logger.debug("Could not add column %s.%s.%s: %s", schema, table_name, name, exc)
        present.add(name)

    return present
