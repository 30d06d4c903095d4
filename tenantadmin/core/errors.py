from __future__ import annotations


class TenantAdminError(Exception):
    """Base error for tenantadmin."""


class ReportRenderError(TenantAdminError):
    """Report could not be rendered in the requested format."""


class PermissionCatalogError(TenantAdminError):
    """Permission string is not part of the known catalog."""
