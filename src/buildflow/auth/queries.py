"""Typed reads and writes against a users/profiles/user_roles table set.

The same three tables exist in every agency database and, for super
admins only, in the main database. Raw rows are converted into the
dataclasses below at this boundary so the locator never handles untyped
mappings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from src.buildflow.core.rbac import SUPER_ADMIN_ROLE

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialRow:
    """A user's login record. ``password_hash`` never leaves the core."""

    id: str
    email: str
    password_hash: str | None
    is_active: bool = True
    email_confirmed: bool | None = None
    two_factor_enabled: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_sign_in_at: datetime | None = None

    @classmethod
    def from_row(cls, row: Any) -> CredentialRow:
        is_active = getattr(row, "is_active", True)
        return cls(
            id=str(row.id),
            email=row.email,
            password_hash=row.password_hash,
            is_active=True if is_active is None else bool(is_active),
            email_confirmed=getattr(row, "email_confirmed", None),
            two_factor_enabled=bool(getattr(row, "two_factor_enabled", False)),
            created_at=getattr(row, "created_at", None),
            updated_at=getattr(row, "updated_at", None),
            last_sign_in_at=getattr(row, "last_sign_in_at", None),
        )


@dataclass(frozen=True)
class ProfileRow:
    user_id: str
    full_name: str | None = None
    phone: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> ProfileRow:
        return cls(
            user_id=str(row.user_id),
            full_name=getattr(row, "full_name", None),
            phone=getattr(row, "phone", None),
            avatar_url=getattr(row, "avatar_url", None),
        )


@dataclass(frozen=True)
class RoleRow:
    role: str
    tenant_id: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> RoleRow:
        agency_id = getattr(row, "agency_id", None)
        return cls(role=row.role, tenant_id=str(agency_id) if agency_id is not None else None)


# ── Main database: super admins ─────────────────────────────────────────────


async def find_super_admin(
    conn: AsyncConnection, email: str
) -> tuple[CredentialRow, ProfileRow | None] | None:
    """Find an active system-level super admin by normalized email.

    Only role assignments with ``agency_id IS NULL`` qualify.
    """
    result = await conn.execute(
        text("""
            SELECT
                u.id,
                u.email,
                u.password_hash,
                u.email_confirmed,
                u.is_active,
                u.created_at,
                u.updated_at,
                u.last_sign_in_at,
                p.user_id AS profile_user_id,
                p.full_name,
                p.phone,
                p.avatar_url
            FROM public.users u
            JOIN public.user_roles ur ON u.id = ur.user_id
                AND ur.role = :role
                AND ur.agency_id IS NULL
            LEFT JOIN public.profiles p ON u.id = p.user_id
            WHERE LOWER(u.email) = :email
              AND u.is_active = true
            LIMIT 1
        """),
        {"email": email, "role": SUPER_ADMIN_ROLE},
    )
    row = result.first()
    if row is None:
        return None

    profile = None
    if getattr(row, "profile_user_id", None) is not None:
        profile = ProfileRow(
            user_id=str(row.profile_user_id),
            full_name=row.full_name,
            phone=row.phone,
            avatar_url=row.avatar_url,
        )
    return CredentialRow.from_row(row), profile


async def fetch_system_roles(conn: AsyncConnection, user_id: str) -> list[RoleRow]:
    """Role assignments not scoped to any agency."""
    result = await conn.execute(
        text("""
            SELECT role, agency_id
            FROM public.user_roles
            WHERE user_id = :user_id AND agency_id IS NULL
        """),
        {"user_id": user_id},
    )
    return [RoleRow.from_row(row) for row in result.fetchall()]


# ── Agency databases ────────────────────────────────────────────────────────


async def find_credential(conn: AsyncConnection, email: str) -> CredentialRow | None:
    """Find a user by case-insensitive email."""
    result = await conn.execute(
        text("""
            SELECT id, email, password_hash, email_confirmed, is_active,
                   two_factor_enabled, created_at, updated_at, last_sign_in_at
            FROM public.users
            WHERE LOWER(email) = :email
            LIMIT 1
        """),
        {"email": email},
    )
    row = result.first()
    return CredentialRow.from_row(row) if row is not None else None


async def fetch_profile(conn: AsyncConnection, user_id: str) -> ProfileRow | None:
    result = await conn.execute(
        text("""
            SELECT user_id, full_name, phone, avatar_url
            FROM public.profiles
            WHERE user_id = :user_id
            LIMIT 1
        """),
        {"user_id": user_id},
    )
    row = result.first()
    return ProfileRow.from_row(row) if row is not None else None


async def fetch_roles(conn: AsyncConnection, user_id: str, tenant_id: str | None) -> list[RoleRow]:
    """Role assignments for this agency plus unscoped ones.

    In isolated agency databases ``agency_id`` may be NULL or set to the
    agency id; both count.
    """
    result = await conn.execute(
        text("""
            SELECT role, agency_id
            FROM public.user_roles
            WHERE user_id = :user_id
              AND (agency_id IS NULL OR CAST(agency_id AS TEXT) = :tenant_id)
        """),
        {"user_id": user_id, "tenant_id": tenant_id},
    )
    return [RoleRow.from_row(row) for row in result.fetchall()]


async def touch_last_sign_in(conn: AsyncConnection, user_id: str) -> bool:
    """Best-effort ``last_sign_in_at = now()``.

    Runs in a SAVEPOINT; a failure (e.g. the column is missing) is logged
    and reported as False, never raised.
    """
    try:
        async with conn.begin_nested():
            await conn.execute(
                text("UPDATE public.users SET last_sign_in_at = NOW() WHERE id = :user_id"),
                {"user_id": user_id},
            )
    except Exception as exc:
        logger.warning("Could not update last_sign_in_at for user %s: %s", user_id, exc)
        return False
    return True
