from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import Field
from sqlalchemy import delete, func, not_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_db, require_permission
from tenantadmin.apps.api.errors import database_error
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import CamelModel, success_response
from tenantadmin.core.config import get_settings
from tenantadmin.domain.models import ExportSchedule, ExportScheduleExecution, FilterPreset
from tenantadmin.persistence.guards import tenant_predicate
from tenantadmin.services.audit import audit_action
from tenantadmin.services.export_schedules import (
    DEFAULT_DELIVERY_TIME,
    SCHEDULE_ACTIONS,
    deleted_message,
    enforce_schedule_limit,
    parse_schedule_ids,
    serialize_schedule,
    validate_schedule_fields,
)
from tenantadmin.services.permissions import PERM_USERS_EXPORT


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/users/exports", tags=["export-schedules"], responses=DEFAULT_ERROR_RESPONSES)


class ScheduleCreateRequest(CamelModel):
    # Required fields stay optional here; validate_schedule_fields reports them together.
    name: str | None = Field(default=None, max_length=256)
    description: str | None = Field(default=None, max_length=2048)
    frequency: str | None = None
    format: str | None = None
    recipients: list[str] | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    time: str | None = None
    email_subject: str | None = Field(default=None, max_length=512)
    email_body: str | None = Field(default=None, max_length=16384)
    filter_preset_id: str | None = None
    is_active: bool = True


class ScheduleBulkRequest(CamelModel):
    action: str | None = None
    schedule_ids: list[str] | None = None


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": message})


@router.get("/schedule")
async def list_schedules(
    request: Request,
    principal: Principal = Depends(require_permission(PERM_USERS_EXPORT)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    execution_count = (
        select(func.count(ExportScheduleExecution.id))
        .where(ExportScheduleExecution.schedule_id == ExportSchedule.id)
        .correlate(ExportSchedule)
        .scalar_subquery()
    )
    try:
        result = await db.execute(
            select(ExportSchedule, execution_count)
            .where(tenant_predicate(ExportSchedule, principal.tenant_id))
            .order_by(ExportSchedule.created_at.desc(), ExportSchedule.id)
        )
    except SQLAlchemyError as exc:
        logger.exception("export_schedules_fetch_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to fetch export schedules") from exc
    schedules = [serialize_schedule(schedule, int(count or 0)) for schedule, count in result.all()]
    return success_response(request=request, data={"schedules": schedules})


@router.post("/schedule", status_code=201)
async def create_schedule(
    request: Request,
    payload: ScheduleCreateRequest,
    principal: Principal = Depends(require_permission(PERM_USERS_EXPORT)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    validate_schedule_fields(
        name=payload.name,
        frequency=payload.frequency,
        export_format=payload.format,
        recipients=payload.recipients,
        day_of_week=payload.day_of_week,
        day_of_month=payload.day_of_month,
        time=payload.time,
    )
    settings = get_settings()
    try:
        existing = await db.scalar(
            select(func.count(ExportSchedule.id)).where(
                tenant_predicate(ExportSchedule, principal.tenant_id)
            )
        )
    except SQLAlchemyError as exc:
        logger.exception("export_schedule_count_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to create export schedule") from exc
    try:
        enforce_schedule_limit(int(existing or 0), settings.export_schedule_max_per_tenant)
    except HTTPException as exc:
        await audit_action(
            db=db,
            principal=principal,
            request=request,
            event_type="admin.export_schedule.created",
            outcome="failure",
            resource_type="export_schedule",
            metadata={"reason": "limit_reached", "max": settings.export_schedule_max_per_tenant},
            error_code="BAD_REQUEST",
        )
        raise exc

    try:
        if payload.filter_preset_id:
            preset_id = await db.scalar(
                select(FilterPreset.id).where(
                    tenant_predicate(FilterPreset, principal.tenant_id),
                    FilterPreset.id == payload.filter_preset_id,
                )
            )
            if preset_id is None:
                raise _bad_request("Filter preset not found")
        schedule = ExportSchedule(
            id=uuid4().hex,
            tenant_id=principal.tenant_id,
            user_id=principal.subject_id,
            name=payload.name.strip(),
            description=payload.description,
            frequency=payload.frequency,
            format=payload.format,
            recipients=list(payload.recipients or []),
            day_of_week=payload.day_of_week,
            day_of_month=payload.day_of_month,
            time=payload.time or DEFAULT_DELIVERY_TIME,
            email_subject=payload.email_subject,
            email_body=payload.email_body,
            filter_preset_id=payload.filter_preset_id or None,
            is_active=payload.is_active,
        )
        db.add(schedule)
        await db.commit()
        await db.refresh(schedule)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("export_schedule_create_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to create export schedule") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.export_schedule.created",
        resource_type="export_schedule",
        resource_id=schedule.id,
        metadata={
            "frequency": schedule.frequency,
            "format": schedule.format,
            "recipient_count": len(schedule.recipients),
        },
    )
    return success_response(
        request=request,
        data={
            "schedule": serialize_schedule(schedule, 0),
            "message": "Export schedule created successfully",
        },
    )


@router.patch("/schedule")
async def bulk_update_schedules(
    request: Request,
    payload: ScheduleBulkRequest,
    principal: Principal = Depends(require_permission(PERM_USERS_EXPORT)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if payload.action not in SCHEDULE_ACTIONS or payload.schedule_ids is None:
        raise _bad_request("Invalid action")
    try:
        # Each matched row flips its own flag; rows in other tenants are never touched.
        result = await db.execute(
            update(ExportSchedule)
            .where(
                tenant_predicate(ExportSchedule, principal.tenant_id),
                ExportSchedule.id.in_(payload.schedule_ids),
            )
            .values(is_active=not_(ExportSchedule.is_active))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("export_schedules_update_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to update export schedules") from exc

    updated = int(result.rowcount or 0)
    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.export_schedule.toggled",
        resource_type="export_schedule",
        metadata={"schedule_ids": payload.schedule_ids, "updated": updated},
    )
    return success_response(
        request=request, data={"updatedCount": updated, "message": "Schedules updated"}
    )


@router.delete("/schedule")
async def delete_schedules(
    request: Request,
    ids: str | None = Query(default=None),
    principal: Principal = Depends(require_permission(PERM_USERS_EXPORT)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    schedule_ids = parse_schedule_ids(ids)
    if not schedule_ids:
        raise _bad_request("No schedule IDs provided")
    owned_ids = select(ExportSchedule.id).where(
        tenant_predicate(ExportSchedule, principal.tenant_id),
        ExportSchedule.id.in_(schedule_ids),
    )
    try:
        await db.execute(
            delete(ExportScheduleExecution)
            .where(ExportScheduleExecution.schedule_id.in_(owned_ids))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            delete(ExportSchedule)
            .where(
                tenant_predicate(ExportSchedule, principal.tenant_id),
                ExportSchedule.id.in_(schedule_ids),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("export_schedules_delete_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to delete export schedules") from exc

    deleted = int(result.rowcount or 0)
    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.export_schedule.deleted",
        resource_type="export_schedule",
        metadata={"schedule_ids": schedule_ids, "deleted": deleted},
    )
    return success_response(
        request=request,
        data={"deletedCount": deleted, "message": deleted_message(deleted)},
    )
