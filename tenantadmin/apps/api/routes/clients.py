from __future__ import annotations

import logging
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, Request
from pydantic import Field
from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.deps import Principal, get_db, require_permission
from tenantadmin.apps.api.errors import database_error
from tenantadmin.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantadmin.apps.api.response import CamelModel, success_response
from tenantadmin.domain.models import Client
from tenantadmin.persistence.guards import tenant_predicate
from tenantadmin.services.audit import audit_action
from tenantadmin.services.clients import (
    client_not_found,
    contains_pattern,
    email_conflict,
    normalize_choice,
    serialize_client,
    validate_client_form,
)
from tenantadmin.services.permissions import PERM_CLIENTS_READ, PERM_CLIENTS_WRITE


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/entities", tags=["clients"], responses=DEFAULT_ERROR_RESPONSES)

_EDITABLE_FIELDS = ("phone", "company", "address", "city", "country", "notes")


class ClientCreateRequest(CamelModel):
    # Required fields are checked by validate_client_form so messages match the client form.
    name: str | None = Field(default=None, max_length=256)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=64)
    company: str | None = Field(default=None, max_length=256)
    tier: str = "INDIVIDUAL"
    status: str = "ACTIVE"
    address: str | None = Field(default=None, max_length=512)
    city: str | None = Field(default=None, max_length=128)
    country: str | None = Field(default=None, max_length=128)
    notes: str | None = Field(default=None, max_length=4096)


class ClientPatchRequest(CamelModel):
    name: str | None = Field(default=None, max_length=256)
    email: str | None = Field(default=None, max_length=320)
    phone: str | None = Field(default=None, max_length=64)
    company: str | None = Field(default=None, max_length=256)
    tier: str | None = None
    status: str | None = None
    address: str | None = Field(default=None, max_length=512)
    city: str | None = Field(default=None, max_length=128)
    country: str | None = Field(default=None, max_length=128)
    notes: str | None = Field(default=None, max_length=4096)


async def _load_client(db: AsyncSession, *, tenant_id: str, client_id: str) -> Client:
    try:
        client = await db.scalar(
            select(Client).where(tenant_predicate(Client, tenant_id), Client.id == client_id)
        )
    except SQLAlchemyError as exc:
        logger.exception("client_fetch_failed client_id=%s", client_id)
        raise database_error("Failed to fetch client") from exc
    if client is None:
        raise client_not_found()
    return client


async def _email_taken(
    db: AsyncSession, *, tenant_id: str, email: str, exclude_id: str | None = None
) -> bool:
    query = select(Client.id).where(
        tenant_predicate(Client, tenant_id), func.lower(Client.email) == email.lower()
    )
    if exclude_id is not None:
        query = query.where(Client.id != exclude_id)
    return (await db.scalar(query)) is not None


@router.get("/clients")
async def list_clients(
    request: Request,
    search: str | None = Query(default=None, max_length=256),
    status: str | None = Query(default=None, max_length=32),
    tier: str | None = Query(default=None, max_length=32),
    principal: Principal = Depends(require_permission(PERM_CLIENTS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    query = select(Client).where(tenant_predicate(Client, principal.tenant_id))
    if search and search.strip():
        pattern = contains_pattern(search.strip().lower())
        query = query.where(
            or_(
                func.lower(Client.name).like(pattern, escape="\\"),
                func.lower(Client.email).like(pattern, escape="\\"),
                func.lower(func.coalesce(Client.company, "")).like(pattern, escape="\\"),
            )
        )
    if status:
        query = query.where(Client.status == normalize_choice(status))
    if tier:
        query = query.where(Client.tier == normalize_choice(tier))
    try:
        result = await db.execute(query.order_by(Client.created_at.desc(), Client.id))
    except SQLAlchemyError as exc:
        logger.exception("clients_fetch_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to fetch clients") from exc
    items = [serialize_client(client) for client in result.scalars().all()]
    return success_response(request=request, data={"items": items, "total": len(items)})


@router.post("/clients", status_code=201)
async def create_client(
    request: Request,
    payload: ClientCreateRequest,
    principal: Principal = Depends(require_permission(PERM_CLIENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    validate_client_form(
        name=payload.name, email=payload.email, tier=payload.tier, status=payload.status
    )
    email = payload.email.strip()
    try:
        if await _email_taken(db, tenant_id=principal.tenant_id, email=email):
            raise email_conflict()
        client = Client(
            id=uuid4().hex,
            tenant_id=principal.tenant_id,
            name=payload.name.strip(),
            email=email,
            tier=normalize_choice(payload.tier),
            status=normalize_choice(payload.status),
            created_by=principal.subject_id,
            **{field: getattr(payload, field) for field in _EDITABLE_FIELDS},
        )
        db.add(client)
        await db.commit()
        await db.refresh(client)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("client_create_failed tenant_id=%s", principal.tenant_id)
        raise database_error("Failed to create client") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.client.created",
        resource_type="client",
        resource_id=client.id,
        metadata={"tier": client.tier, "status": client.status},
    )
    return success_response(request=request, data=serialize_client(client))


@router.get("/clients/{client_id}")
async def get_client(
    client_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_CLIENTS_READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    client = await _load_client(db, tenant_id=principal.tenant_id, client_id=client_id)
    return success_response(request=request, data=serialize_client(client))


@router.patch("/clients/{client_id}")
async def update_client(
    client_id: str,
    request: Request,
    payload: ClientPatchRequest,
    principal: Principal = Depends(require_permission(PERM_CLIENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    client = await _load_client(db, tenant_id=principal.tenant_id, client_id=client_id)
    changes = payload.model_dump(exclude_unset=True)
    # Validate the merged record so a partial update cannot blank required fields.
    name = changes["name"] if "name" in changes else client.name
    email = changes["email"] if "email" in changes else client.email
    validate_client_form(
        name=name, email=email, tier=changes.get("tier"), status=changes.get("status")
    )
    email = email.strip()
    try:
        if email.lower() != client.email.lower() and await _email_taken(
            db, tenant_id=principal.tenant_id, email=email, exclude_id=client.id
        ):
            raise email_conflict()
        client.name = name.strip()
        client.email = email
        if changes.get("tier"):
            client.tier = normalize_choice(changes["tier"])
        if changes.get("status"):
            client.status = normalize_choice(changes["status"])
        for field in _EDITABLE_FIELDS:
            if field in changes:
                setattr(client, field, changes[field])
        await db.commit()
        await db.refresh(client)
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("client_update_failed client_id=%s", client_id)
        raise database_error("Failed to update client") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.client.updated",
        resource_type="client",
        resource_id=client.id,
        metadata={"fields": sorted(changes)},
    )
    return success_response(request=request, data=serialize_client(client))


@router.delete("/clients/{client_id}")
async def delete_client(
    client_id: str,
    request: Request,
    principal: Principal = Depends(require_permission(PERM_CLIENTS_WRITE)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    client = await _load_client(db, tenant_id=principal.tenant_id, client_id=client_id)
    try:
        await db.delete(client)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("client_delete_failed client_id=%s", client_id)
        raise database_error("Failed to delete client") from exc

    await audit_action(
        db=db,
        principal=principal,
        request=request,
        event_type="admin.client.deleted",
        resource_type="client",
        resource_id=client_id,
    )
    return success_response(request=request, data={"message": "Client deleted successfully"})
