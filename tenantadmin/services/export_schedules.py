from __future__ import annotations

import re
from typing import Any, Sequence

from fastapi import HTTPException

from tenantadmin.domain.models import ExportSchedule
from tenantadmin.services.reports import EXPORT_FORMATS


FREQUENCIES = ("daily", "weekly", "monthly")
SCHEDULE_ACTIONS = ("toggleActive",)
DEFAULT_DELIVERY_TIME = "09:00"

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

MISSING_FIELDS_MESSAGE = "Missing required fields: name, frequency, format, recipients"


def _bad_request(message: str, **details: Any) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": message, **details})


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_PATTERN.match(value))


def validate_schedule_fields(
    *,
    name: str | None,
    frequency: str | None,
    export_format: str | None,
    recipients: Sequence[Any] | None,
    day_of_week: int | None = None,
    day_of_month: int | None = None,
    time: str | None = None,
) -> None:
    # Reject before any write so a bad payload never leaves a partial row behind.
    if not (name or "").strip() or not frequency or not export_format or not recipients:
        raise _bad_request(MISSING_FIELDS_MESSAGE)
    if export_format not in EXPORT_FORMATS:
        raise _bad_request("Invalid export format")
    if frequency not in FREQUENCIES:
        raise _bad_request("Invalid frequency", allowed=list(FREQUENCIES))
    if any(not is_valid_email(email) for email in recipients):
        raise _bad_request("One or more recipient emails are invalid")
    if day_of_week is not None and not 0 <= day_of_week <= 6:
        raise _bad_request("dayOfWeek must be between 0 and 6")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise _bad_request("dayOfMonth must be between 1 and 31")
    if time is not None and not _TIME_PATTERN.match(time):
        raise _bad_request("time must use HH:MM (24-hour)")


def enforce_schedule_limit(existing_count: int, max_per_tenant: int) -> None:
    # Enforce the per-tenant schedule cap with a stable error payload.
    if existing_count >= max_per_tenant:
        raise _bad_request(
            f"Maximum number of export schedules ({max_per_tenant}) reached for this tenant",
            max_schedules=max_per_tenant,
        )


def parse_schedule_ids(raw: str | None) -> list[str]:
    # Accept comma-separated ids; blanks and duplicates are dropped.
    ids: list[str] = []
    for part in (raw or "").split(","):
        value = part.strip()
        if value and value not in ids:
            ids.append(value)
    return ids


def deleted_message(count: int) -> str:
    return f"{count} schedule(s) deleted"


def serialize_schedule(schedule: ExportSchedule, execution_count: int | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": schedule.id,
        "tenantId": schedule.tenant_id,
        "userId": schedule.user_id,
        "name": schedule.name,
        "description": schedule.description,
        "frequency": schedule.frequency,
        "format": schedule.format,
        "recipients": list(schedule.recipients or []),
        "dayOfWeek": schedule.day_of_week,
        "dayOfMonth": schedule.day_of_month,
        "time": schedule.time,
        "emailSubject": schedule.email_subject,
        "emailBody": schedule.email_body,
        "filterPresetId": schedule.filter_preset_id,
        "isActive": schedule.is_active,
        "lastExecutedAt": schedule.last_executed_at.isoformat() if schedule.last_executed_at else None,
        "createdAt": schedule.created_at.isoformat() if schedule.created_at else None,
        "updatedAt": schedule.updated_at.isoformat() if schedule.updated_at else None,
    }
    if execution_count is not None:
        payload["executionCount"] = execution_count
    return payload
