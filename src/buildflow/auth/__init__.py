"""Multi-tenant login: agency registry, typed user queries and the cross-tenant locator."""

from src.buildflow.auth.locator import LocatedUser, UserLocator, normalize_email
from src.buildflow.auth.registry import TenantRow, list_active_tenants

__all__ = ["LocatedUser", "TenantRow", "UserLocator", "list_active_tenants", "normalize_email"]
