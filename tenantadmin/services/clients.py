from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from tenantadmin.domain.models import Client
from tenantadmin.services.export_schedules import EMAIL_PATTERN


CLIENT_TIERS = ("INDIVIDUAL", "SMB", "ENTERPRISE")
CLIENT_STATUSES = ("ACTIVE", "INACTIVE", "SUSPENDED")


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": "BAD_REQUEST", "message": message})


def normalize_choice(value: str | None) -> str | None:
    # Tier and status are stored upper-case; input casing is not significant.
    if value is None:
        return None
    return value.strip().upper()


def contains_pattern(text: str) -> str:
    # LIKE pattern for a literal substring; pair with escape="\\".
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def validate_client_form(
    *,
    name: str | None,
    email: str | None,
    tier: str | None = None,
    status: str | None = None,
) -> None:
    # Same checks the client form runs before submitting, in the same order.
    if not (name or "").strip():
        raise _bad_request("Client name is required")
    if not (email or "").strip():
        raise _bad_request("Email is required")
    if not EMAIL_PATTERN.match(email.strip()):
        raise _bad_request("Invalid email format")
    if tier is not None and normalize_choice(tier) not in CLIENT_TIERS:
        raise _bad_request(f"Invalid tier: {tier}")
    if status is not None and normalize_choice(status) not in CLIENT_STATUSES:
        raise _bad_request(f"Invalid status: {status}")


def client_not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "Client not found"})


def email_conflict() -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"code": "CONFLICT", "message": "A client with this email already exists"},
    )


def serialize_client(client: Client) -> dict[str, Any]:
    return {
        "id": client.id,
        "name": client.name,
        "email": client.email,
        "phone": client.phone,
        "company": client.company,
        "tier": client.tier,
        "status": client.status,
        "address": client.address,
        "city": client.city,
        "country": client.country,
        "notes": client.notes,
        "createdBy": client.created_by,
        "createdAt": client.created_at.isoformat() if client.created_at else None,
        "updatedAt": client.updated_at.isoformat() if client.updated_at else None,
    }
