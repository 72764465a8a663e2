#!/usr/bin/env python3
"""CLI script to create or update the system super admin.

Usage:
    python scripts/create_super_admin.py --email super@buildflow.local --password changeme
    python scripts/create_super_admin.py --email super@buildflow.local --password changeme --full-name "Ops Admin"

Connects to the main database using DATABASE_URL from environment or .env file.
Creates (or updates) the user with a pgcrypto bcrypt hash, its profile, and a
super_admin role with agency_id NULL. Safe to run repeatedly.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.buildflow
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def create_super_admin(email: str, password: str, full_name: str) -> None:
    """Upsert the super admin user, profile and system-level role."""
    from sqlalchemy import text

    from src.buildflow.auth.locator import normalize_email
    from src.buildflow.core.database import ConnectionPoolManager
    from src.buildflow.core.rbac import SUPER_ADMIN_ROLE

    email = normalize_email(email)
    pool_manager = ConnectionPoolManager()

    try:
        async with pool_manager.main_engine.begin() as conn:
            existing = (
                await conn.execute(
                    text("SELECT id FROM public.users WHERE LOWER(email) = :email"),
                    {"email": email},
                )
            ).first()

            if existing is not None:
                user_id = existing.id
                await conn.execute(
                    text("""
                        UPDATE public.users
                        SET password_hash = crypt(:password, gen_salt('bf')),
                            email_confirmed = true,
                            is_active = true,
                            updated_at = NOW()
                        WHERE id = :user_id
                    """),
                    {"password": password, "user_id": user_id},
                )
                print(f"User already exists, password reset: {email}")
            else:
                user_id = (
                    await conn.execute(
                        text("""
                            INSERT INTO public.users (email, password_hash, email_confirmed, is_active)
                            VALUES (:email, crypt(:password, gen_salt('bf')), true, true)
                            RETURNING id
                        """),
                        {"email": email, "password": password},
                    )
                ).scalar_one()
                print(f"User created: {email}")

            profile = (
                await conn.execute(
                    text("SELECT user_id FROM public.profiles WHERE user_id = :user_id"),
                    {"user_id": user_id},
                )
            ).first()
            if profile is not None:
                await conn.execute(
                    text("UPDATE public.profiles SET full_name = :full_name, updated_at = NOW() WHERE user_id = :user_id"),
                    {"full_name": full_name, "user_id": user_id},
                )
            else:
                await conn.execute(
                    text("INSERT INTO public.profiles (user_id, full_name) VALUES (:user_id, :full_name)"),
                    {"user_id": user_id, "full_name": full_name},
                )

            role = (
                await conn.execute(
                    text("""
                        SELECT 1 FROM public.user_roles
                        WHERE user_id = :user_id AND role = :role AND agency_id IS NULL
                    """),
                    {"user_id": user_id, "role": SUPER_ADMIN_ROLE},
                )
            ).first()
            if role is None:
                await conn.execute(
                    text("INSERT INTO public.user_roles (user_id, role, agency_id) VALUES (:user_id, :role, NULL)"),
                    {"user_id": user_id, "role": SUPER_ADMIN_ROLE},
                )

            # A super admin scoped to an agency would be routed to that agency
            removed = await conn.execute(
                text("""
                    DELETE FROM public.user_roles
                    WHERE user_id = :user_id AND role = :role AND agency_id IS NOT NULL
                """),
                {"user_id": user_id, "role": SUPER_ADMIN_ROLE},
            )
            if removed.rowcount:
                print(f"Removed {removed.rowcount} agency-scoped super_admin role(s)")

        print("Super admin ready:")
        print(f"  ID:        {user_id}")
        print(f"  Email:     {email}")
        print(f"  Full name: {full_name}")
    finally:
        await pool_manager.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or update the system super admin")
    parser.add_argument("--email", default=os.environ.get("SUPER_ADMIN_EMAIL"), help="Super admin email")
    parser.add_argument("--password", default=os.environ.get("SUPER_ADMIN_PASSWORD"), help="Super admin password")
    parser.add_argument(
        "--full-name",
        default=os.environ.get("SUPER_ADMIN_NAME", "Super Administrator"),
        help="Display name stored on the profile",
    )
    args = parser.parse_args()

    if not args.email or not args.password:
        parser.error("--email and --password are required (or set SUPER_ADMIN_EMAIL / SUPER_ADMIN_PASSWORD)")

    asyncio.run(create_super_admin(args.email, args.password, args.full_name))


if __name__ == "__main__":
    main()
