"""Authentication API tests.

Exercises the HTTP surface end to end against the in-memory databases:
- POST /api/v1/auth/login status mapping (200/400/401/503)
- GET /api/v1/auth/me and /roles routed by token claims
- Agency-context and role guards
- Health endpoints and request-id header
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from unittest.mock import patch

import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from src.buildflow.api.deps import require_agency_context, require_role
from src.buildflow.config import Settings
from src.buildflow.core.security import SessionClaims
from tests.fakes import unreachable_error

LOGIN_URL = "/api/v1/auth/login"


async def _login(client: AsyncClient, email: str, password: str) -> str:
    response = await client.post(LOGIN_URL, json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ── Login ─────────────────────────────────────────────────────────────────────


async def test_login_tenant_user(client, add_tenant):
    acme = add_tenant("acme", name="Acme Builders")
    acme.add_user("jane@acme.com", "janepass", user_id="u-jane", roles=("project_manager",))

    response = await client.post(LOGIN_URL, json={"email": "Jane@Acme.com", "password": "janepass"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["token"]
    user = data["user"]
    assert user["id"] == "u-jane"
    assert user["roles"] == ["project_manager"]
    assert user["agency"] == {
        "id": "acme",
        "name": "Acme Builders",
        "domain": "acme.example.com",
        "database_name": "agency_acme",
    }
    assert user["profile"]["full_name"] == "Test User"
    assert "password_hash" not in response.text


async def test_login_super_admin(client, main_db, add_tenant):
    main_db.add_user("root@buildflow.io", "rootpass", roles=("super_admin",))
    add_tenant("down").connect_error = unreachable_error()

    response = await client.post(LOGIN_URL, json={"email": "root@buildflow.io", "password": "rootpass"})

    assert response.status_code == 200
    user = response.json()["user"]
    assert user["roles"] == ["super_admin"]
    assert user["agency"] == {"id": None, "name": None, "domain": None, "database_name": None}


async def test_unknown_email_and_wrong_password_are_indistinguishable(client, add_tenant):
    acme = add_tenant("acme")
    acme.add_user("jane@acme.com", "janepass")

    unknown = await client.post(LOGIN_URL, json={"email": "ghost@acme.com", "password": "janepass"})
    wrong = await client.post(LOGIN_URL, json={"email": "jane@acme.com", "password": "nope"})

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json() == wrong.json() == {"detail": "Invalid email or password"}


async def test_inactive_user_gets_same_failure(client, add_tenant):
    acme = add_tenant("acme")
    acme.add_user("gone@acme.com", "pw", is_active=False)

    response = await client.post(LOGIN_URL, json={"email": "gone@acme.com", "password": "pw"})

    assert response.status_code == 401
    assert response.json() == {"detail": "Invalid email or password"}


async def test_login_missing_fields_is_bad_request(client):
    response = await client.post(LOGIN_URL, json={"email": "", "password": "pw"})
    assert response.status_code == 400

    response = await client.post(LOGIN_URL, json={"email": "jane@acme.com"})
    assert response.status_code == 400


async def test_login_oversized_fields_is_bad_request(client):
    response = await client.post(LOGIN_URL, json={"email": "a" * 400 + "@acme.com", "password": "pw"})
    assert response.status_code == 400

    response = await client.post(LOGIN_URL, json={"email": "jane@acme.com", "password": "x" * 2000})
    assert response.status_code == 400


async def test_login_main_database_down_is_unavailable(client, main_db):
    main_db.connect_error = unreachable_error()

    response = await client.post(LOGIN_URL, json={"email": "jane@acme.com", "password": "pw"})

    assert response.status_code == 503
    assert response.json() == {"detail": "Authentication service unavailable"}


async def test_login_without_signing_secret_is_unavailable(client, add_tenant):
    add_tenant("acme").add_user("jane@acme.com", "pw")

    with patch(
        "src.buildflow.services.authentication.get_settings",
        return_value=Settings(JWT_SECRET_KEY=""),
    ):
        response = await client.post(LOGIN_URL, json={"email": "jane@acme.com", "password": "pw"})

    assert response.status_code == 503


async def test_response_carries_request_id(client):
    response = await client.get("/health")
    assert response.headers.get("X-Request-ID")


# ── Identity and roles ────────────────────────────────────────────────────────


async def test_me_returns_routing_claims(client, add_tenant):
    add_tenant("acme").add_user("jane@acme.com", "pw", user_id="u-jane")
    token = await _login(client, "jane@acme.com", "pw")

    response = await client.get("/api/v1/auth/me", headers=_bearer(token))

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "u-jane"
    assert data["tenant_id"] == "acme"
    assert data["tenant_database_identifier"] == "agency_acme"
    assert data["is_super_admin"] is False


async def test_me_requires_token(client):
    response = await client.get("/api/v1/auth/me")
    assert response.status_code == 401

    response = await client.get("/api/v1/auth/me", headers=_bearer("garbage"))
    assert response.status_code == 401


async def test_roles_read_from_tenant_database(client, add_tenant, main_db):
    acme = add_tenant("acme")
    acme.add_user("jane@acme.com", "pw", roles=("employee", "finance_manager"))
    token = await _login(client, "jane@acme.com", "pw")
    main_statements = len(main_db.statements)

    response = await client.get("/api/v1/auth/roles", headers=_bearer(token))

    assert response.status_code == 200
    assert response.json() == {
        "roles": ["employee", "finance_manager"],
        "highest_role": "finance_manager",
    }
    assert len(main_db.statements) == main_statements


async def test_roles_for_super_admin_read_from_main(client, main_db):
    main_db.add_user("root@buildflow.io", "rootpass", roles=("super_admin",))
    token = await _login(client, "root@buildflow.io", "rootpass")

    response = await client.get("/api/v1/auth/roles", headers=_bearer(token))

    assert response.status_code == 200
    assert response.json()["highest_role"] == "super_admin"


# ── Guards ────────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def guarded_client(pool_manager) -> AsyncGenerator[AsyncClient, None]:
    """A small app whose routes sit behind the agency-context and role guards."""
    app = FastAPI()
    app.state.pool_manager = pool_manager

    @app.get("/projects")
    async def projects(claims: SessionClaims = Depends(require_agency_context)):
        return {"database": claims.tenant_database_identifier}

    @app.get("/payroll")
    async def payroll(roles: list[str] = Depends(require_role("finance_manager"))):
        return {"roles": roles}

    @app.get("/payroll/exact")
    async def payroll_exact(roles: list[str] = Depends(require_role("finance_manager", allow_higher=False))):
        return {"roles": roles}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def test_agency_context_accepts_matching_header(client, guarded_client, add_tenant):
    add_tenant("acme").add_user("jane@acme.com", "pw")
    token = await _login(client, "jane@acme.com", "pw")

    response = await guarded_client.get(
        "/projects", headers={**_bearer(token), "X-Agency-Database": "agency_acme"}
    )

    assert response.status_code == 200
    assert response.json() == {"database": "agency_acme"}


async def test_agency_context_rejects_mismatched_header(client, guarded_client, add_tenant):
    add_tenant("acme").add_user("jane@acme.com", "pw")
    token = await _login(client, "jane@acme.com", "pw")

    response = await guarded_client.get(
        "/projects", headers={**_bearer(token), "X-Agency-Database": "agency_globex"}
    )

    assert response.status_code == 403


async def test_agency_context_rejects_super_admin(client, guarded_client, main_db):
    main_db.add_user("root@buildflow.io", "rootpass", roles=("super_admin",))
    token = await _login(client, "root@buildflow.io", "rootpass")

    response = await guarded_client.get("/projects", headers=_bearer(token))

    assert response.status_code == 403


async def test_role_guard(client, guarded_client, add_tenant):
    acme = add_tenant("acme")
    acme.add_user("cfo@acme.com", "pw", roles=("cfo",))
    acme.add_user("intern@acme.com", "pw", roles=("intern",))
    acme.add_user("nobody@acme.com", "pw", roles=())
    cfo = await _login(client, "cfo@acme.com", "pw")
    intern = await _login(client, "intern@acme.com", "pw")
    nobody = await _login(client, "nobody@acme.com", "pw")

    assert (await guarded_client.get("/payroll", headers=_bearer(cfo))).status_code == 200
    assert (await guarded_client.get("/payroll/exact", headers=_bearer(cfo))).status_code == 403
    assert (await guarded_client.get("/payroll", headers=_bearer(intern))).status_code == 403
    assert (await guarded_client.get("/payroll", headers=_bearer(nobody))).status_code == 403


# ── Health ────────────────────────────────────────────────────────────────────


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_readiness_reports_main_database(client, main_db):
    response = await client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["checks"]["database"] == "ok"

    main_db.connect_error = unreachable_error()
    response = await client.get("/health/ready")
    assert response.status_code == 503
    assert response.json()["status"] == "degraded"


async def test_metrics_endpoint(client):
    response = await client.get("/metrics")
    assert response.status_code == 200
    assert "buildflow_login_attempts_total" in response.text
