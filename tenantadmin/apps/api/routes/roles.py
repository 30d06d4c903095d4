from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import Field, field_validator
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_db, require_permission
from tenantadmin.apps.api.errors import database_error
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import CamelModel, success_response
from tenantadmin.core.errors import PermissionCatalogError
from tenantadmin.domain.models import Role, User
from tenantadmin.persistence.guards import tenant_predicate
from tenantadmin.services.audit import audit_action
from tenantadmin.services.permissions import (
    PERM_ROLES_READ,
    PERM_ROLES_WRITE,
    PERMISSION_CATALOG,
    ROLE_PERMISSIONS,
    validate_permissions,
)


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["roles"], responses=DEFAULT_ERROR_RESPONSES)


class RoleCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1024)
    permissions: list[str] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        # Length limits apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


class RolePatchRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1024)
    permissions: list[str] | None = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        # Length limits apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


def _serialize_role(role: Role, user_count: int | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "permissions": list(role.permissions or []),
        "createdAt": role.created_at.isoformat() if role.created_at else None,
        "updatedAt": role.updated_at.isoformat() if role.updated_at else None,
    }
    if user_count is not None:
        payload["userCount"] = user_count
    return payload


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Role not found"})


def _name_conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "CONFLICT", "message": "A role with this name already exists"},
    )


def _checked_permissions(permissions: list[str]) -> list[str]:
    try:
        return validate_permissions(permissions)
    except PermissionCatalogError as exc:
        raise HTTPException(
            status_code=400, detail={"code": "BAD_REQUEST", "message": str(exc)}
        ) from exc


async def _load_role(db: AsyncSession, *, tenant_id: str, role_id: str) -> Role:
    try:
        role = await db.scalar(
            select(Role).where(tenant_predicate(Role, tenant_id), Role.id == role_id)
        )
    except SQLAlchemyError as exc:
        logger.exception("role_fetch_failed role_id=%s", role_id)
        raise database_error("Failed to fetch role") from exc
    if role is None:
        raise _not_found()
    return role


async def _name_taken(db: AsyncSession, *, tenant_id: str, name: str, exclude_id: str | None = None) -> bool:
    query = select(Role.id).where(tenant_predicate(Role, tenant_id), Role.name == name)
    if exclude_id is not None:
        query = query.where(Role.id != exclude_id)
    return (await db.scalar(query)) is not None


@router.get("/permissions")
async def list_permissions(
    request: Request,
    principal: Principal = Depends(require_permission(PERM_ROLES_READ)),
) -> dict:
    catalog = [
        {"key": key, "description": description} for key, description in PERMISSION_CATALOG.items()
    ]
    builtin = {role: sorted(grants) for role, grants in ROLE_PERMISSIONS.items()}
    return success_response(request=request, data={"permissions": catalog, "roles": builtin})


@router.get("/roles")
async def list_roles(
    request: Request,
    principal: Principal = Depends(require_permission(PERM_ROLES_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = await db.execute(
            select(Role, func.count(User.id))
            .outerjoin(User, User.custom_role_id == Role.id)
            .where(tenant_predicate(Role, principal.tenant_id))
            .group_by(Role.id)
            .order_by(Role.name)
        )
    except SQLAlchemyError as exc:
        logger.exception("roles_fetch_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to fetch roles") from exc
    items = [_serialize_role(role, int(count)) for role, count in result.all()]
    return success_response(request=request, data={"items": items})


@router.post("/roles", status_code=201)
async def create_role(
    request: Request,
    payload: RoleCreateRequest,
    principal: Principal = Depends(require_permission(PERM_ROLES_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    permissions = _checked_permissions(payload.permissions)
    name = payload.name.strip()
    try:
        if await _name_taken(db, tenant_id=principal.tenant_id, name=name):
            raise _name_conflict()
        role = Role(
            id=uuid4().hex,
            tenant_id=principal.tenant_id,
            name=name,
            description=payload.description,
            permissions=permissions,
        )
        db.add(role)
        await db.commit()
        await db.refresh(role)
    except IntegrityError as exc:
        await db.rollback()
        raise _name_conflict() from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("role_create_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to create role") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.role.created",
        resource_type="role",
        resource_id=role.id,
        metadata={"name": role.name, "permissions": permissions},
    )
    return success_response(request=request, data=_serialize_role(role, 0))


@router.get("/roles/{role_id}")
async def get_role(
    role_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_ROLES_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await _load_role(db, tenant_id=principal.tenant_id, role_id=role_id)
    return success_response(request=request, data=_serialize_role(role))


@router.patch("/roles/{role_id}")
async def update_role(
    role_id: str,
    request: Request,
    payload: RolePatchRequest,
    principal: Principal = Depends(require_permission(PERM_ROLES_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await _load_role(db, tenant_id=principal.tenant_id, role_id=role_id)
    changes = payload.model_dump(exclude_unset=True)
    try:
        if "name" in changes and changes["name"]:
            name = changes["name"].strip()
            if name != role.name and await _name_taken(
                db, tenant_id=principal.tenant_id, name=name, exclude_id=role.id
            ):
                raise _name_conflict()
            role.name = name
        if "description" in changes:
            role.description = changes["description"]
        if changes.get("permissions") is not None:
            role.permissions = _checked_permissions(changes["permissions"])
        await db.commit()
        await db.refresh(role)
    except IntegrityError as exc:
        await db.rollback()
        raise _name_conflict() from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("role_update_failed role_id=%s", role_id)
        raise database_error("Failed to update role") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.role.updated",
        resource_type="role",
        resource_id=role.id,
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=_serialize_role(role))


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_ROLES_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await _load_role(db, tenant_id=principal.tenant_id, role_id=role_id)
    try:
        assigned = await db.scalar(
            select(func.count(User.id)).where(
                tenant_predicate(User, principal.tenant_id), User.custom_role_id == role.id
            )
        )
        if assigned:
            raise HTTPException(
                status_code=409,
                detail={
                    "code": "CONFLICT",
                    "message": "Role is assigned to users and cannot be deleted",
                    "user_count": int(assigned),
                },
            )
        await db.delete(role)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("role_delete_failed role_id=%s", role_id)
        raise database_error("Failed to delete role") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.role.deleted",
        resource_type="role",
        resource_id=role_id,
    )
    return success_response(request=request, data={"message": "Role deleted successfully"})
