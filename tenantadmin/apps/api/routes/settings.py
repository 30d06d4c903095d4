from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_db, require_permission
from tenantadmin.apps.api.errors import database_error
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import success_response
from tenantadmin.domain.models import UserManagementSettings
from tenantadmin.services.audit import audit_action
from tenantadmin.services.permissions import PERM_SETTINGS_READ, PERM_SETTINGS_WRITE
from tenantadmin.services.user_settings import (
    effective_settings,
    merge_settings,
    validate_settings_patch,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/settings", tags=["settings"], responses=DEFAULT_ERROR_RESPONSES)


def _payload(row: UserManagementSettings | None) -> dict[str, Any]:
    return {
        "settings": effective_settings(row.settings if row else None),
        "updatedBy": row.updated_by if row else None,
        "updatedAt": row.updated_at.isoformat() if row and row.updated_at else None,
    }


@router.get("/user-management")
async def get_user_management_settings(
    request: Request,
    principal: Principal = Depends(require_permission(PERM_SETTINGS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        row = await db.get(UserManagementSettings, principal.tenant_id)
    except SQLAlchemyError as exc:
        logger.exception("settings_fetch_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to fetch settings") from exc
    return success_response(request=request, data=_payload(row))


@router.patch("/user-management")
async def update_user_management_settings(
    request: Request,
    patch: dict[str, Any] = Body(...),
    principal: Principal = Depends(require_permission(PERM_SETTINGS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    validate_settings_patch(patch)
    try:
        row = await db.get(UserManagementSettings, principal.tenant_id)
        if row is None:
            row = UserManagementSettings(tenant_id=principal.tenant_id, settings={})
            db.add(row)
        # Store only overrides so later default changes still reach the tenant.
        row.settings = merge_settings(row.settings or {}, patch)
        row.updated_by = principal.subject_id
        await db.commit()
        await db.refresh(row)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("settings_update_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to update settings") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.settings.updated",
        resource_type="user_management_settings",
        resource_id=principal.tenant_id,
        metadata={"keys": sorted(patch)},
    )
    return success_response(request=request, data=_payload(row))
