"""Role hierarchy shared by the API guards.

Lower number means higher authority. Unknown roles rank below every known
role.
"""

from __future__ import annotations

from collections.abc import Iterable

SUPER_ADMIN_ROLE = "super_admin"

ROLE_HIERARCHY: dict[str, int] = {
    "super_admin": 1,
    "ceo": 2,
    "cto": 3,
    "cfo": 4,
    "coo": 5,
    "admin": 6,
    "operations_manager": 7,
    "department_head": 8,
    "team_lead": 9,
    "project_manager": 10,
    "hr": 11,
    "finance_manager": 12,
    "sales_manager": 13,
    "marketing_manager": 14,
    "quality_assurance": 15,
    "it_support": 16,
    "legal_counsel": 17,
    "business_analyst": 18,
    "customer_success": 19,
    "employee": 20,
    "contractor": 21,
    "intern": 22,
}

UNKNOWN_ROLE_LEVEL = 99


def role_level(role: str) -> int:
    return ROLE_HIERARCHY.get(role, UNKNOWN_ROLE_LEVEL)


def highest_role(roles: Iterable[str]) -> str | None:
    """Return the most senior role in ``roles``, or None if empty.

    Ties keep the first role seen.
    """
    best: str | None = None
    for role in roles:
        if best is None or role_level(role) < role_level(best):
            best = role
    return best


def has_role_or_higher(role: str, minimum_role: str) -> bool:
    """True if ``role`` carries at least the authority of ``minimum_role``."""
    return role_level(role) <= role_level(minimum_role)


def is_authorized(roles: Iterable[str], required: Iterable[str], allow_higher: bool = True) -> bool:
    """Check the caller's highest role against ``required``.

    With ``allow_higher`` any role at or above one of the required roles
    passes; without it the highest role must be listed exactly.
    """
    top = highest_role(roles)
    if top is None:
        return False
    required = list(required)
    if top in required:
        return True
    return allow_higher and any(has_role_or_higher(top, r) for r in required)
