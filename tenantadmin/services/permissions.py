from __future__ import annotations

from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.core.errors import PermissionCatalogError
from tenantadmin.domain.models import Role


ROLE_CLIENT = "CLIENT"
ROLE_TEAM = "TEAM"
ROLE_ADMIN = "ADMIN"
ROLE_SUPER_ADMIN = "SUPER_ADMIN"

USER_ROLES: tuple[str, ...] = (ROLE_CLIENT, ROLE_TEAM, ROLE_ADMIN, ROLE_SUPER_ADMIN)

PERM_USERS_READ = "admin:users:read"
PERM_USERS_WRITE = "admin:users:write"
PERM_USERS_EXPORT = "admin:users:export"
PERM_CLIENTS_READ = "admin:clients:read"
PERM_CLIENTS_WRITE = "admin:clients:write"
PERM_ROLES_READ = "admin:roles:read"
PERM_ROLES_WRITE = "admin:roles:write"
PERM_REPORTS_READ = "admin:reports:read"
PERM_REPORTS_WRITE = "admin:reports:write"
PERM_REPORTS_GENERATE = "admin:reports:generate"
PERM_SETTINGS_READ = "admin:settings:read"
PERM_SETTINGS_WRITE = "admin:settings:write"

PERMISSION_CATALOG: dict[str, str] = {
    PERM_USERS_READ: "View users, saved views and filter presets",
    PERM_USERS_WRITE: "Create, update and delete users",
    PERM_USERS_EXPORT: "Manage scheduled user exports",
    PERM_CLIENTS_READ: "View clients",
    PERM_CLIENTS_WRITE: "Create, update and delete clients",
    PERM_ROLES_READ: "View roles and the permission catalog",
    PERM_ROLES_WRITE: "Create, update and delete custom roles",
    PERM_REPORTS_READ: "View report definitions and execution history",
    PERM_REPORTS_WRITE: "Create and delete report definitions",
    PERM_REPORTS_GENERATE: "Generate and download reports",
    PERM_SETTINGS_READ: "View user management settings",
    PERM_SETTINGS_WRITE: "Change user management settings",
}

_TEAM_PERMISSIONS = frozenset(
    {PERM_USERS_READ, PERM_CLIENTS_READ, PERM_REPORTS_READ}
)
_ADMIN_PERMISSIONS = frozenset(PERMISSION_CATALOG) - {PERM_ROLES_WRITE, PERM_SETTINGS_WRITE}

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    ROLE_CLIENT: frozenset(),
    ROLE_TEAM: _TEAM_PERMISSIONS,
    ROLE_ADMIN: _ADMIN_PERMISSIONS,
    ROLE_SUPER_ADMIN: frozenset(PERMISSION_CATALOG),
}


def normalize_role(role: str) -> str:
    # Enforce a stable, uppercased role vocabulary for permission checks.
    normalized = role.strip().upper()
    if normalized not in ROLE_PERMISSIONS:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def validate_permissions(permissions: Iterable[str]) -> list[str]:
    # Keep custom roles inside the catalog; order is preserved and duplicates dropped.
    cleaned: list[str] = []
    for permission in permissions:
        value = permission.strip()
        if value not in PERMISSION_CATALOG:
            raise PermissionCatalogError(f"Unknown permission: {permission}")
        if value not in cleaned:
            cleaned.append(value)
    return cleaned


def effective_permissions(role: str, custom_permissions: Iterable[str] | None = None) -> frozenset[str]:
    granted = set(ROLE_PERMISSIONS.get(role, frozenset()))
    for permission in custom_permissions or ():
        if permission in PERMISSION_CATALOG:
            granted.add(permission)
    return frozenset(granted)


def has_permission(
    *, role: str, permission: str, custom_permissions: Iterable[str] | None = None
) -> bool:
    return permission in effective_permissions(role, custom_permissions)


async def load_custom_permissions(
    *, session: AsyncSession, tenant_id: str, custom_role_id: str | None
) -> list[str]:
    # Ignore roles from other tenants so a stale assignment cannot leak grants.
    if not custom_role_id:
        return []
    role = await session.get(Role, custom_role_id)
    if role is None or role.tenant_id != tenant_id:
        return []
    return list(role.permissions or [])
