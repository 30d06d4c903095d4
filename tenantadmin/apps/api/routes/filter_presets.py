from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, Request
from pydantic import Field, field_validator
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_db, require_permission
from tenantadmin.apps.api.errors import database_error
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import CamelModel, success_response
from tenantadmin.core.config import get_settings
from tenantadmin.domain.models import ExportSchedule, FilterPreset, User
from tenantadmin.persistence.guards import tenant_predicate
from tenantadmin.services.audit import audit_action
from tenantadmin.services.filter_presets import (
    apply_preset,
    enforce_preset_limit,
    ensure_can_modify,
    ensure_can_view,
    filter_logic_for,
    preset_name_conflict,
    serialize_preset,
)
from tenantadmin.services.permissions import PERM_USERS_READ
from tenantadmin.services.users import serialize_user


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["filter-presets"], responses=DEFAULT_ERROR_RESPONSES)

_CREATE_CONFLICT_MESSAGE = "A preset with this name already exists"


class PresetCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1024)
    filter_config: dict[str, Any] = Field(default_factory=dict)
    is_public: bool = False
    icon: str | None = Field(default=None, max_length=64)
    color: str | None = Field(default=None, max_length=32)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        # Length limits apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


class PresetPatchRequest(CamelModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = Field(default=None, max_length=1024)
    filter_config: dict[str, Any] | None = None
    is_public: bool | None = None
    icon: str | None = Field(default=None, max_length=64)
    color: str | None = Field(default=None, max_length=32)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        # Length limits apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


async def _load_preset(db: AsyncSession, *, tenant_id: str, preset_id: str) -> FilterPreset | None:
    # Presets from other tenants read as missing rather than forbidden.
    try:
        return await db.scalar(
            select(FilterPreset).where(
                tenant_predicate(FilterPreset, tenant_id), FilterPreset.id == preset_id
            )
        )
    except SQLAlchemyError as exc:
        logger.exception("filter_preset_fetch_failed preset_id=%s", preset_id)
        raise database_error("Failed to fetch preset") from exc


async def _creator_name(db: AsyncSession, user_id: str) -> str | None:
    return await db.scalar(select(User.name).where(User.id == user_id))


async def _name_taken(
    db: AsyncSession, *, tenant_id: str, owner_id: str, name: str, exclude_id: str | None = None
) -> bool:
    query = select(FilterPreset.id).where(
        tenant_predicate(FilterPreset, tenant_id),
        FilterPreset.created_by == owner_id,
        FilterPreset.name == name,
    )
    if exclude_id is not None:
        query = query.where(FilterPreset.id != exclude_id)
    return (await db.scalar(query)) is not None


@router.get("/filter-presets")
async def list_presets(
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = await db.execute(
            select(FilterPreset, User.name)
            .outerjoin(User, User.id == FilterPreset.created_by)
            .where(
                tenant_predicate(FilterPreset, principal.tenant_id),
                or_(
                    FilterPreset.created_by == principal.subject_id,
                    FilterPreset.is_public.is_(True),
                ),
            )
            .order_by(FilterPreset.usage_count.desc(), FilterPreset.name)
        )
    except SQLAlchemyError as exc:
        logger.exception("filter_presets_fetch_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to fetch presets") from exc
    items = [serialize_preset(preset, creator_name) for preset, creator_name in result.all()]
    return success_response(request=request, data={"items": items})


@router.post("/filter-presets", status_code=201)
async def create_preset(
    request: Request,
    payload: PresetCreateRequest,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    settings = get_settings()
    name = payload.name.strip()
    try:
        owned = await db.scalar(
            select(func.count(FilterPreset.id)).where(
                tenant_predicate(FilterPreset, principal.tenant_id),
                FilterPreset.created_by == principal.subject_id,
            )
        )
        enforce_preset_limit(int(owned or 0), settings.filter_preset_max_per_user)
        if await _name_taken(
            db, tenant_id=principal.tenant_id, owner_id=principal.subject_id, name=name
        ):
            raise preset_name_conflict(_CREATE_CONFLICT_MESSAGE)
        preset = FilterPreset(
            id=uuid4().hex,
            tenant_id=principal.tenant_id,
            name=name,
            description=payload.description,
            filter_config=payload.filter_config,
            filter_logic=filter_logic_for(payload.filter_config),
            is_public=payload.is_public,
            icon=payload.icon,
            color=payload.color,
            created_by=principal.subject_id,
            usage_count=0,
        )
        db.add(preset)
        await db.commit()
        await db.refresh(preset)
    except IntegrityError as exc:
        await db.rollback()
        raise preset_name_conflict(_CREATE_CONFLICT_MESSAGE) from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("filter_preset_create_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to create preset") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.filter_preset.created",
        resource_type="filter_preset",
        resource_id=preset.id,
        metadata={"name": preset.name, "is_public": preset.is_public},
    )
    creator_name = await _creator_name(db, principal.subject_id)
    return success_response(request=request, data=serialize_preset(preset, creator_name))


@router.get("/filter-presets/{preset_id}")
async def get_preset(
    preset_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    preset = ensure_can_view(
        await _load_preset(db, tenant_id=principal.tenant_id, preset_id=preset_id),
        principal.subject_id,
    )
    creator_name = await _creator_name(db, preset.created_by)
    return success_response(request=request, data=serialize_preset(preset, creator_name))


@router.patch("/filter-presets/{preset_id}")
async def update_preset(
    preset_id: str,
    request: Request,
    payload: PresetPatchRequest,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    preset = ensure_can_modify(
        await _load_preset(db, tenant_id=principal.tenant_id, preset_id=preset_id),
        principal.subject_id,
    )
    changes = payload.model_dump(exclude_unset=True)
    try:
        if changes.get("name"):
            name = changes["name"].strip()
            if name != preset.name and await _name_taken(
                db,
                tenant_id=principal.tenant_id,
                owner_id=principal.subject_id,
                name=name,
                exclude_id=preset.id,
            ):
                raise preset_name_conflict()
            preset.name = name
        for field in ("description", "icon", "color"):
            if field in changes:
                setattr(preset, field, changes[field])
        if changes.get("is_public") is not None:
            preset.is_public = changes["is_public"]
        if changes.get("filter_config") is not None:
            preset.filter_config = changes["filter_config"]
            preset.filter_logic = filter_logic_for(changes["filter_config"])
        await db.commit()
        await db.refresh(preset)
    except IntegrityError as exc:
        await db.rollback()
        raise preset_name_conflict() from exc
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("filter_preset_update_failed preset_id=%s", preset_id)
        raise database_error("Failed to update preset") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.filter_preset.updated",
        resource_type="filter_preset",
        resource_id=preset.id,
        metadata={"fields": sorted(changes)},
    )
    creator_name = await _creator_name(db, preset.created_by)
    return success_response(request=request, data=serialize_preset(preset, creator_name))


@router.delete("/filter-presets/{preset_id}")
async def delete_preset(
    preset_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    preset = ensure_can_modify(
        await _load_preset(db, tenant_id=principal.tenant_id, preset_id=preset_id),
        principal.subject_id,
    )
    try:
        # Schedules fall back to exporting every user once their preset is gone.
        await db.execute(
            update(ExportSchedule)
            .where(
                tenant_predicate(ExportSchedule, principal.tenant_id),
                ExportSchedule.filter_preset_id == preset.id,
            )
            .values(filter_preset_id=None)
            .execution_options(synchronize_session=False)
        )
        await db.delete(preset)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("filter_preset_delete_failed preset_id=%s", preset_id)
        raise database_error("Failed to delete preset") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.filter_preset.deleted",
        resource_type="filter_preset",
        resource_id=preset_id,
    )
    return success_response(request=request, data={"message": "Preset deleted successfully"})


@router.post("/filter-presets/{preset_id}/apply")
async def apply_filter_preset(
    preset_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    preset = ensure_can_view(
        await _load_preset(db, tenant_id=principal.tenant_id, preset_id=preset_id),
        principal.subject_id,
    )
    try:
        result = await db.execute(
            select(User)
            .where(tenant_predicate(User, principal.tenant_id))
            .order_by(User.created_at.desc(), User.id)
        )
        users = [serialize_user(user) for user in result.scalars().all()]
        await db.execute(
            update(FilterPreset)
            .where(FilterPreset.id == preset.id)
            .values(
                usage_count=FilterPreset.usage_count + 1,
                last_used_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("filter_preset_apply_failed preset_id=%s", preset_id)
        raise database_error("Failed to apply preset") from exc

    filtered = apply_preset(users, preset.filter_config)
    return success_response(
        request=request,
        data={
            "presetId": preset.id,
            "items": filtered.items,
            "stats": {
                "total": filtered.stats.total,
                "filtered": filtered.stats.filtered,
                "hasActiveFilters": filtered.stats.has_active_filters,
            },
        },
    )
