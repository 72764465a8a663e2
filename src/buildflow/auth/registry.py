"""Agency registry reads from the main database."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection

from src.buildflow.core.exceptions import MainDatabaseError


@dataclass(frozen=True)
class TenantRow:
    """An active agency and the database that holds its users."""

    id: str
    name: str
    database_identifier: str
    domain: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> TenantRow:
        return cls(
            id=str(row.id),
            name=row.name,
            database_identifier=row.database_name,
            domain=getattr(row, "domain", None),
        )


async def list_active_tenants(conn: AsyncConnection) -> list[TenantRow]:
    """List every active agency that has a database, in stable scan order.

    An empty registry yields an empty list.

    Raises:
        MainDatabaseError: If the registry cannot be read.
    """
    try:
        result = await conn.execute(
            text("""
                SELECT id, name, domain, database_name
                FROM public.agencies
                WHERE is_active = true AND database_name IS NOT NULL
                ORDER BY created_at, id
            """)
        )
        rows = result.fetchall()
    except (SQLAlchemyError, OSError) as exc:
        raise MainDatabaseError(f"Failed to read agency registry: {exc}") from exc

    return [TenantRow.from_row(row) for row in rows]
