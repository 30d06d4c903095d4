from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import Field, field_validator
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, clear_auth_cache, get_db, require_permission
from tenantadmin.apps.api.errors import database_error
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import CamelModel, success_response
from tenantadmin.domain.models import (
    ApiKey,
    ExportSchedule,
    ExportScheduleExecution,
    FilterPreset,
    Role,
    User,
)
from tenantadmin.persistence.guards import tenant_predicate
from tenantadmin.services.audit import audit_action
from tenantadmin.services.permissions import (
    PERM_USERS_READ,
    PERM_USERS_WRITE,
    effective_permissions,
    load_custom_permissions,
    normalize_role,
)
from tenantadmin.services.user_filters import (
    DEFAULT_VIEW,
    UserFilter,
    build_quick_stats,
    build_view_buttons,
    filter_users,
    get_view,
    view_counts,
)
from tenantadmin.services.users import email_conflict, normalize_status, serialize_user


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["users"], responses=DEFAULT_ERROR_RESPONSES)


class UserCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=256)
    email: str = Field(min_length=3, max_length=320)
    phone: str | None = Field(default=None, max_length=64)
    role: str = "CLIENT"
    status: str = "ACTIVE"
    availability_status: str | None = Field(default=None, max_length=64)
    department: str | None = Field(default=None, max_length=128)
    position: str | None = Field(default=None, max_length=128)
    custom_role_id: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        # Length limits apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


class UserPatchRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    email: str | None = Field(default=None, min_length=3, max_length=320)
    phone: str | None = Field(default=None, max_length=64)
    role: str | None = None
    status: str | None = None
    availability_status: str | None = Field(default=None, max_length=64)
    department: str | None = Field(default=None, max_length=128)
    position: str | None = Field(default=None, max_length=128)
    custom_role_id: str | None = None
    is_active: bool | None = None

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        # Length limits apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": message})


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "User not found"})


def _checked_role(role: str) -> str:
    try:
        return normalize_role(role)
    except ValueError as exc:
        raise _bad_request(str(exc)) from exc


async def _tenant_users(db: AsyncSession, tenant_id: str) -> list[dict[str, Any]]:
    try:
        result = await db.execute(
            select(User)
            .where(tenant_predicate(User, tenant_id))
            .order_by(User.created_at.desc(), User.id)
        )
    except SQLAlchemyError as exc:
        logger.exception("users_fetch_failed tenant_id=%s", tenant_id)
        raise database_error("Failed to fetch users") from exc
    return [serialize_user(user) for user in result.scalars().all()]


async def _load_user(db: AsyncSession, *, tenant_id: str, user_id: str) -> User:
    try:
        user = await db.scalar(
            select(User).where(tenant_predicate(User, tenant_id), User.id == user_id)
        )
    except SQLAlchemyError as exc:
        logger.exception("user_fetch_failed user_id=%s", user_id)
        raise database_error("Failed to fetch user") from exc
    if user is None:
        raise _not_found()
    return user


async def _email_taken(
    db: AsyncSession, *, tenant_id: str, email: str, exclude_id: str | None = None
) -> bool:
    query = select(User.id).where(
        tenant_predicate(User, tenant_id), func.lower(User.email) == email.lower()
    )
    if exclude_id is not None:
        query = query.where(User.id != exclude_id)
    return (await db.scalar(query)) is not None


async def _ensure_custom_role(db: AsyncSession, *, tenant_id: str, role_id: str) -> None:
    exists = await db.scalar(
        select(Role.id).where(tenant_predicate(Role, tenant_id), Role.id == role_id)
    )
    if exists is None:
        raise _bad_request("Custom role not found")


async def _grants(
    db: AsyncSession, *, tenant_id: str, role: str, custom_role_id: str | None
) -> frozenset[str]:
    custom = await load_custom_permissions(
        session=db, tenant_id=tenant_id, custom_role_id=custom_role_id
    )
    return effective_permissions(role, custom)


async def _ensure_assignable(
    db: AsyncSession,
    *,
    request: Request,
    principal: Principal,
    target: User | None,
    role: str,
    custom_role_id: str | None,
) -> None:
    # Role assignments may only hand out grants the caller already holds.
    if target is not None and target.id == principal.subject_id:
        message = "You cannot change your own role"
    else:
        tenant_id = principal.tenant_id
        held = await _grants(
            db, tenant_id=tenant_id, role=principal.role, custom_role_id=principal.custom_role_id
        )
        requested = await _grants(db, tenant_id=tenant_id, role=role, custom_role_id=custom_role_id)
        if target is not None:
            # Demoting a user who outranks the caller is an escalation as well.
            requested |= await _grants(
                db, tenant_id=tenant_id, role=target.role, custom_role_id=target.custom_role_id
            )
        if requested <= held:
            return
        message = "Cannot assign permissions you do not hold"
    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="rbac.forbidden",
        outcome="failure",
        resource_type="user",
        resource_id=target.id if target is not None else None,
        metadata={"role": role, "custom_role_id": custom_role_id},
        error_code="AUTH_FORBIDDEN",
    )
    raise HTTPException(status_code=403, detail={"code": "AUTH_FORBIDDEN", "message": message})


@router.get("/users")
async def list_users(
    request: Request,
    search: str | None = Query(default=None, max_length=256),
    role: str | None = Query(default=None, max_length=32),
    status: str | None = Query(default=None, max_length=32),
    view: str | None = Query(default=None, max_length=32),
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    active_view = view or DEFAULT_VIEW
    if view is not None:
        # A saved view replaces any explicit role filter.
        try:
            role = get_view(view).role
        except ValueError as exc:
            raise _bad_request(str(exc)) from exc

    users = await _tenant_users(db, principal.tenant_id)
    result = filter_users(users, UserFilter(search=search, role=role, status=status))
    counts = view_counts(users)
    return success_response(
        request=request,
        data={
            "items": result.items,
            "stats": {
                "total": result.stats.total,
                "filtered": result.stats.filtered,
                "hasActiveFilters": result.stats.has_active_filters,
            },
            "viewCounts": counts,
            "views": build_view_buttons(counts, active_view),
        },
    )


@router.get("/users/stats")
async def user_stats(
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    users = await _tenant_users(db, principal.tenant_id)
    stats = build_quick_stats(users)
    return success_response(request=request, data=stats.as_payload())


@router.post("/users", status_code=201)
async def create_user(
    request: Request,
    payload: UserCreateRequest,
    principal: Principal = Depends(require_permission(PERM_USERS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = _checked_role(payload.role)
    status = normalize_status(payload.status)
    email = payload.email.strip()
    try:
        if await _email_taken(db, tenant_id=principal.tenant_id, email=email):
            raise email_conflict()
        if payload.custom_role_id:
            await _ensure_custom_role(db, tenant_id=principal.tenant_id, role_id=payload.custom_role_id)
        await _ensure_assignable(
            db,
            request=request,
            principal=principal,
            target=None,
            role=role,
            custom_role_id=payload.custom_role_id,
        )
        user = User(
            id=uuid4().hex,
            tenant_id=principal.tenant_id,
            name=payload.name.strip(),
            email=email,
            phone=payload.phone,
            role=role,
            status=status,
            availability_status=payload.availability_status,
            department=payload.department,
            position=payload.position,
            custom_role_id=payload.custom_role_id,
            is_active=status == "ACTIVE",
        )
        db.add(user)
        await db.commit()
        await db.refresh(user)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("user_create_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to create user") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.user.created",
        resource_type="user",
        resource_id=user.id,
        metadata={"role": role, "status": status},
    )
    return success_response(request=request, data=serialize_user(user))


@router.get("/users/{user_id}")
async def get_user(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await _load_user(db, tenant_id=principal.tenant_id, user_id=user_id)
    return success_response(request=request, data=serialize_user(user))


@router.patch("/users/{user_id}")
async def update_user(
    user_id: str,
    request: Request,
    payload: UserPatchRequest,
    principal: Principal = Depends(require_permission(PERM_USERS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    user = await _load_user(db, tenant_id=principal.tenant_id, user_id=user_id)
    changes = payload.model_dump(exclude_unset=True)
    role = _checked_role(changes["role"]) if changes.get("role") else user.role
    custom_role_id = user.custom_role_id
    if "custom_role_id" in changes:
        custom_role_id = changes["custom_role_id"] or None
    access_changed = False
    try:
        if custom_role_id and custom_role_id != user.custom_role_id:
            await _ensure_custom_role(db, tenant_id=principal.tenant_id, role_id=custom_role_id)
        if role != user.role or custom_role_id != user.custom_role_id:
            await _ensure_assignable(
                db,
                request=request,
                principal=principal,
                target=user,
                role=role,
                custom_role_id=custom_role_id,
            )
            user.role = role
            user.custom_role_id = custom_role_id
            access_changed = True
        if changes.get("email"):
            email = changes["email"].strip()
            if email.lower() != (user.email or "").lower() and await _email_taken(
                db, tenant_id=principal.tenant_id, email=email, exclude_id=user.id
            ):
                raise email_conflict()
            user.email = email
        if changes.get("status"):
            user.status = normalize_status(changes["status"])
            user.is_active = user.status == "ACTIVE"
            access_changed = True
        for field in ("name", "phone", "availability_status", "department", "position"):
            if field in changes:
                setattr(user, field, changes[field])
        if changes.get("is_active") is not None:
            user.is_active = changes["is_active"]
            access_changed = True
        await db.commit()
        await db.refresh(user)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("user_update_failed user_id=%s", user_id)
        raise database_error("Failed to update user") from exc
    if access_changed:
        # Cached principals carry the old role and active flag.
        clear_auth_cache()

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.user.updated",
        resource_type="user",
        resource_id=user.id,
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=serialize_user(user))


@router.delete("/users/{user_id}")
async def delete_user(
    user_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if user_id == principal.subject_id:
        raise _bad_request("You cannot delete your own account")
    user = await _load_user(db, tenant_id=principal.tenant_id, user_id=user_id)
    try:
        # Remove rows that reference the user before the user row itself.
        schedule_ids = select(ExportSchedule.id).where(
            tenant_predicate(ExportSchedule, principal.tenant_id),
            ExportSchedule.user_id == user.id,
        )
        preset_ids = select(FilterPreset.id).where(
            tenant_predicate(FilterPreset, principal.tenant_id),
            FilterPreset.created_by == user.id,
        )
        await db.execute(
            delete(ExportScheduleExecution)
            .where(ExportScheduleExecution.schedule_id.in_(schedule_ids))
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            delete(ExportSchedule)
            .where(ExportSchedule.id.in_(schedule_ids))
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(ExportSchedule)
            .where(
                tenant_predicate(ExportSchedule, principal.tenant_id),
                ExportSchedule.filter_preset_id.in_(preset_ids),
            )
            .values(filter_preset_id=None)
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            delete(FilterPreset)
            .where(FilterPreset.id.in_(preset_ids))
            .execution_options(synchronize_session=False)
        )
        await db.execute(delete(ApiKey).where(ApiKey.user_id == user.id))
        await db.delete(user)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("user_delete_failed user_id=%s", user_id)
        raise database_error("Failed to delete user") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.user.deleted",
        resource_type="user",
        resource_id=user_id,
    )
    return success_response(request=request, data={"message": "User deleted successfully"})
