from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import HTTPException

from tenantadmin.domain.models import User


USER_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED", "PENDING")

# Columns exported into generated reports, in display order.
REPORT_FIELDS = (
    "id",
    "name",
    "email",
    "phone",
    "role",
    "availabilityStatus",
    "department",
    "position",
    "createdAt",
    "lastLoginAt",
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_user(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "phone": user.phone,
        "role": user.role,
        "status": user.status,
        "availabilityStatus": user.availability_status,
        "department": user.department,
        "position": user.position,
        "customRoleId": user.custom_role_id,
        "isActive": user.is_active,
        "createdAt": _iso(user.created_at),
        "updatedAt": _iso(user.updated_at),
        "lastLoginAt": _iso(user.last_login_at),
    }


def user_report_row(user: User) -> dict[str, Any]:
    serialized = serialize_user(user)
    return {field: serialized[field] for field in REPORT_FIELDS}


def normalize_status(status: str) -> str:
    normalized = status.strip().upper()
    if normalized not in USER_STATUSES:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "BAD_REQUEST",
                "message": f"Unsupported status: {status}",
                "allowed": list(USER_STATUSES),
            },
        )
    return normalized


def email_conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "CONFLICT", "message": "A user with this email already exists"},
    )
