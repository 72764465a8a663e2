"""Pydantic schemas for authentication API endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class LoginRequest(BaseModel):
    """Request schema for user login.

    Emptiness and length are checked by the service so a blank or oversized
    field yields the same 400 shape as any other validation failure.
    """

    email: str = Field(default="", description="User email address")
    password: str = Field(default="", description="User password")


class ProfileResponse(BaseModel):
    user_id: str
    full_name: str | None = None
    phone: str | None = None
    avatar_url: str | None = None


class AgencyResponse(BaseModel):
    """Agency the user was found in. Every field is null for super admins."""

    id: str | None = None
    name: str | None = None
    domain: str | None = None
    database_name: str | None = None


class UserResponse(BaseModel):
    """Response schema for the authenticated user."""

    id: str
    email: str
    email_confirmed: bool | None = None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_sign_in_at: datetime | None = None
    profile: ProfileResponse | None = None
    roles: list[str] = Field(default_factory=list)
    agency: AgencyResponse = Field(default_factory=AgencyResponse)


class LoginResponse(BaseModel):
    success: bool = True
    token: str
    user: UserResponse


class MeResponse(BaseModel):
    """Response schema for current identity from token claims."""

    user_id: str
    email: str
    tenant_id: str | None = None
    tenant_database_identifier: str | None = None
    is_super_admin: bool
    expires_at: datetime


class RolesResponse(BaseModel):
    roles: list[str]
    highest_role: str | None = None
