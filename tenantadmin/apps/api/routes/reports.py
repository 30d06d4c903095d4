from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import Field, field_validator
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_db, require_permission
from tenantadmin.apps.api.errors import database_error
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import CamelModel, success_response
from tenantadmin.domain.models import Report, ReportExecution, User
from tenantadmin.persistence.guards import tenant_predicate
from tenantadmin.services.audit import audit_action
from tenantadmin.services.permissions import (
    PERM_REPORTS_GENERATE,
    PERM_REPORTS_READ,
    PERM_REPORTS_WRITE,
)
from tenantadmin.services.reports import (
    EXPORT_FORMATS,
    ReportMeta,
    build_report_data,
    content_disposition,
    render_report,
    report_filename,
)
from tenantadmin.services.users import user_report_row


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["reports"], responses=DEFAULT_ERROR_RESPONSES)

EXECUTION_GENERATING = "generating"
EXECUTION_COMPLETED = "completed"
EXECUTION_FAILED = "failed"


class ReportColumn(CamelModel):
    name: str = Field(min_length=1, max_length=128)
    label: str | None = Field(default=None, max_length=256)


class ReportCalculation(CamelModel):
    type: str
    field: str | None = None
    name: str | None = None


class ReportSection(CamelModel):
    title: str | None = Field(default=None, max_length=256)
    columns: list[ReportColumn] = Field(default_factory=list)
    calculations: list[ReportCalculation] = Field(default_factory=list)


class ReportCreateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=256)
    description: str | None = Field(default=None, max_length=2048)
    sections: list[ReportSection] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        # Length limits apply to the trimmed name.
        return value.strip() if isinstance(value, str) else value


class ReportGenerateRequest(CamelModel):
    format: str = "pdf"
    filters: Any = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_report(report: Report) -> dict[str, Any]:
    return {
        "id": report.id,
        "name": report.name,
        "description": report.description,
        "sections": list(report.sections or []),
        "createdBy": report.created_by,
        "lastGeneratedAt": _iso(report.last_generated_at),
        "generationCount": report.generation_count,
        "createdAt": _iso(report.created_at),
        "updatedAt": _iso(report.updated_at),
    }


def _serialize_execution(execution: ReportExecution) -> dict[str, Any]:
    return {
        "id": execution.id,
        "reportId": execution.report_id,
        "status": execution.status,
        "format": execution.format,
        "fileSizeBytes": execution.file_size_bytes,
        "errorMessage": execution.error_message,
        "executedAt": _iso(execution.executed_at),
        "completedAt": _iso(execution.completed_at),
    }


async def _load_report(db: AsyncSession, *, tenant_id: str, report_id: str) -> Report:
    try:
        report = await db.scalar(
            select(Report).where(tenant_predicate(Report, tenant_id), Report.id == report_id)
        )
    except SQLAlchemyError as exc:
        logger.exception("report_fetch_failed report_id=%s", report_id)
        raise database_error("Failed to fetch report") from exc
    if report is None:
        raise HTTPException(
            status_code=404, detail={"code": "NOT_FOUND", "message": "Report not found"}
        )
    return report


@router.get("/reports")
async def list_reports(
    request: Request,
    principal: Principal = Depends(require_permission(PERM_REPORTS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        result = await db.execute(
            select(Report)
            .where(tenant_predicate(Report, principal.tenant_id))
            .order_by(Report.created_at.desc(), Report.id)
        )
    except SQLAlchemyError as exc:
        logger.exception("reports_fetch_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to fetch reports") from exc
    items = [_serialize_report(report) for report in result.scalars().all()]
    return success_response(request=request, data={"items": items})


@router.post("/reports", status_code=201)
async def create_report(
    request: Request,
    payload: ReportCreateRequest,
    principal: Principal = Depends(require_permission(PERM_REPORTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        report = Report(
            id=uuid4().hex,
            tenant_id=principal.tenant_id,
            name=payload.name.strip(),
            description=payload.description,
            sections=[section.model_dump(exclude_none=True) for section in payload.sections],
            created_by=principal.subject_id,
            generation_count=0,
        )
        db.add(report)
        await db.commit()
        await db.refresh(report)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("report_create_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to create report") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.report.created",
        resource_type="report",
        resource_id=report.id,
        metadata={"name": report.name, "sections": len(report.sections)},
    )
    return success_response(request=request, data=_serialize_report(report))


@router.get("/reports/{report_id}")
async def get_report(
    report_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_REPORTS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await _load_report(db, tenant_id=principal.tenant_id, report_id=report_id)
    return success_response(request=request, data=_serialize_report(report))


@router.delete("/reports/{report_id}")
async def delete_report(
    report_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_REPORTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await _load_report(db, tenant_id=principal.tenant_id, report_id=report_id)
    try:
        await db.execute(
            delete(ReportExecution)
            .where(ReportExecution.report_id == report.id)
            .execution_options(synchronize_session=False)
        )
        await db.delete(report)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("report_delete_failed report_id=%s", report_id)
        raise database_error("Failed to delete report") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.report.deleted",
        resource_type="report",
        resource_id=report_id,
    )
    return success_response(request=request, data={"message": "Report deleted successfully"})


@router.get("/reports/{report_id}/executions")
async def list_executions(
    report_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_permission(PERM_REPORTS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await _load_report(db, tenant_id=principal.tenant_id, report_id=report_id)
    try:
        result = await db.execute(
            select(ReportExecution)
            .where(
                tenant_predicate(ReportExecution, principal.tenant_id),
                ReportExecution.report_id == report.id,
            )
            .order_by(ReportExecution.executed_at.desc(), ReportExecution.id)
            .limit(limit)
        )
    except SQLAlchemyError as exc:
        logger.exception("report_executions_fetch_failed report_id=%s", report_id)
        raise database_error("Failed to fetch report executions") from exc
    items = [_serialize_execution(execution) for execution in result.scalars().all()]
    return success_response(request=request, data={"items": items})


async def _mark_execution_failed(db: AsyncSession, *, execution_id: str, message: str) -> None:
    # Failure bookkeeping must not mask the original error.
    try:
        await db.execute(
            update(ReportExecution)
            .where(ReportExecution.id == execution_id)
            .values(
                status=EXECUTION_FAILED,
                error_message=message[:2000],
                completed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.warning("report_execution_mark_failed_error execution_id=%s", execution_id, exc_info=exc)


@router.post("/reports/{report_id}/generate")
async def generate_report(
    report_id: str,
    request: Request,
    payload: ReportGenerateRequest | None = None,
    principal: Principal = Depends(require_permission(PERM_REPORTS_GENERATE)),
    db: AsyncSession = Depends(get_db),
) -> Response:
    payload = payload or ReportGenerateRequest()
    report = await _load_report(db, tenant_id=principal.tenant_id, report_id=report_id)
    export_format = payload.format
    if export_format not in EXPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "BAD_REQUEST",
                "message": f"Invalid export format. Supported: {', '.join(EXPORT_FORMATS)}",
            },
        )

    execution_id = uuid4().hex
    try:
        db.add(
            ReportExecution(
                id=execution_id,
                report_id=report.id,
                tenant_id=principal.tenant_id,
                status=EXECUTION_GENERATING,
                format=export_format,
                executed_at=datetime.now(timezone.utc),
            )
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("report_execution_create_failed report_id=%s", report_id)
        raise database_error("Failed to generate report") from exc

    meta = ReportMeta(name=report.name, description=report.description)
    sections = list(report.sections or [])
    try:
        result = await db.execute(
            select(User)
            .where(tenant_predicate(User, principal.tenant_id))
            .order_by(User.created_at.desc(), User.id)
        )
        rows = [user_report_row(user) for user in result.scalars().all()]
        data = build_report_data(sections=sections, rows=rows, filters=payload.filters)
        rendered = render_report(export_format, meta, data)
        filename = report_filename(meta.name, rendered.extension, timestamp_ms=int(time.time() * 1000))
        headers = {
            "Content-Disposition": content_disposition(filename),
            "X-Report-Execution-Id": execution_id,
        }
        now = datetime.now(timezone.utc)
        await db.execute(
            update(ReportExecution)
            .where(ReportExecution.id == execution_id)
            .values(
                status=EXECUTION_COMPLETED,
                file_size_bytes=rendered.size_bytes,
                completed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await db.execute(
            update(Report)
            .where(Report.id == report.id)
            .values(last_generated_at=now, generation_count=Report.generation_count + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception as exc:  # noqa: BLE001 - every failure is recorded on the execution row
        await db.rollback()
        logger.exception("report_generation_failed report_id=%s execution_id=%s", report_id, execution_id)
        await _mark_execution_failed(db, execution_id=execution_id, message=str(exc) or type(exc).__name__)
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Failed to generate report"},
        ) from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.report.generated",
        resource_type="report",
        resource_id=report_id,
        metadata={
            "execution_id": execution_id,
            "format": export_format,
            "row_count": data["rowCount"],
            "size_bytes": rendered.size_bytes,
        },
    )
    return Response(content=rendered.content, media_type=rendered.content_type, headers=headers)
