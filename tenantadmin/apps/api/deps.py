from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, AsyncGenerator
import asyncio
import time

from fastapi import Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantadmin.apps.api.rate_limit import enforce_rate_limit
from tenantadmin.core.config import get_settings
from tenantadmin.domain.models import ApiKey, User
from tenantadmin.persistence.db import get_session
from tenantadmin.services.audit import get_request_context, record_event
from tenantadmin.services.auth.api_keys import hash_api_key
from tenantadmin.services.permissions import (
    ROLE_ADMIN,
    has_permission,
    load_custom_permissions,
    normalize_role,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Capture the authenticated identity used for tenant scoping and permission checks.
    subject_id: str
    tenant_id: str
    role: str
    api_key_id: str | None = None
    custom_role_id: str | None = None
    auth_method: str = "api_key"


_auth_cache: dict[str, tuple[float, Principal]] = {}
_auth_cache_lock = asyncio.Lock()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _extract_error_code(exc: HTTPException) -> str | None:
    detail = exc.detail
    if isinstance(detail, dict):
        return detail.get("code")
    return None


def _request_metadata(request: Request) -> dict[str, str]:
    # Include minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


async def _audit_auth(
    *,
    db: AsyncSession,
    request: Request,
    event_type: str,
    outcome: str,
    tenant_id: str | None = None,
    actor_type: str = "anonymous",
    actor_id: str | None = None,
    actor_role: str | None = None,
    metadata: dict[str, Any] | None = None,
    error: HTTPException | None = None,
) -> None:
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type="auth",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata={**_request_metadata(request), **(metadata or {})},
        error_code=_extract_error_code(error) if error is not None else None,
        commit=True,
        best_effort=True,
    )


async def _get_cached_principal(key_hash: str, ttl_s: int) -> Principal | None:
    # Cache principals briefly to reduce auth DB load between requests.
    if ttl_s <= 0:
        return None
    now = time.time()
    async with _auth_cache_lock:
        entry = _auth_cache.get(key_hash)
        if not entry:
            return None
        expires_at, principal = entry
        if expires_at <= now:
            _auth_cache.pop(key_hash, None)
            return None
        return principal


async def _set_cached_principal(key_hash: str, principal: Principal, ttl_s: int) -> None:
    # Store principals with a fixed expiry to keep revocations responsive.
    if ttl_s <= 0:
        return
    async with _auth_cache_lock:
        _auth_cache[key_hash] = (time.time() + ttl_s, principal)


def clear_auth_cache() -> None:
    _auth_cache.clear()


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for API key authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Allow tenant headers only when explicitly enabled for local dev.
    tenant_id = request.headers.get("X-Tenant-Id")
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required in dev bypass mode")
    role_header = request.headers.get("X-Role", ROLE_ADMIN)
    try:
        role = normalize_role(role_header)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        subject_id=request.headers.get("X-User-Id") or f"dev-{tenant_id}",
        tenant_id=tenant_id,
        role=role,
        api_key_id=None,
        auth_method="dev_bypass",
    )


async def _dev_bypass_principal(request: Request, db: AsyncSession) -> Principal:
    principal = _principal_from_dev_headers(request)
    await _audit_auth(
        db=db,
        request=request,
        event_type="auth.access.success",
        outcome="success",
        tenant_id=principal.tenant_id,
        actor_type="system",
        actor_id=principal.subject_id,
        actor_role=principal.role,
        metadata={"auth_mode": "dev_bypass"},
    )
    return principal


async def _deny(
    *,
    db: AsyncSession,
    request: Request,
    error: HTTPException,
    api_key: ApiKey | None = None,
    user: User | None = None,
    event_type: str = "auth.access.failure",
) -> HTTPException:
    await _audit_auth(
        db=db,
        request=request,
        event_type=event_type,
        outcome="failure",
        tenant_id=api_key.tenant_id if api_key is not None else None,
        actor_type="api_key" if api_key is not None else "anonymous",
        actor_id=api_key.id if api_key is not None else None,
        actor_role=user.role if user is not None else None,
        metadata={"user_id": user.id} if user is not None else None,
        error=error,
    )
    return error


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    # Emit audit events for auth outcomes without blocking request flow on failures.
    settings = get_settings()
    header_value = request.headers.get(settings.auth_api_key_header)
    try:
        bearer_token = _parse_bearer_token(header_value)
    except HTTPException as exc:
        raise await _deny(db=db, request=request, error=exc)

    if not settings.auth_enabled:
        if settings.auth_dev_bypass:
            return await _dev_bypass_principal(request, db)
        raise await _deny(
            db=db,
            request=request,
            error=_auth_error("Authentication disabled; set AUTH_DEV_BYPASS=true for dev access"),
        )

    if not bearer_token:
        if settings.auth_dev_bypass:
            return await _dev_bypass_principal(request, db)
        raise await _deny(db=db, request=request, error=_auth_error("Missing API key"))

    key_hash = hash_api_key(bearer_token)
    cached = await _get_cached_principal(key_hash, settings.auth_cache_ttl_s)
    if cached:
        return cached

    try:
        result = await db.execute(
            select(ApiKey, User)
            .join(User, ApiKey.user_id == User.id)
            .where(ApiKey.key_hash == key_hash)
        )
    except SQLAlchemyError as exc:
        error = HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        )
        raise error from exc

    row = result.first()
    if row is None:
        raise await _deny(db=db, request=request, error=_auth_error("Invalid API key"))
    api_key, user = row
    if api_key.revoked_at is not None or not user.is_active:
        raise await _deny(
            db=db,
            request=request,
            error=_auth_error("API key is revoked or inactive"),
            api_key=api_key,
            user=user,
        )
    if api_key.expires_at is not None:
        expires_at = api_key.expires_at
        if expires_at.tzinfo is None:
            # SQLite drops tzinfo on round-trip; stored values are UTC.
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            raise await _deny(
                db=db,
                request=request,
                error=_auth_error("API key expired"),
                api_key=api_key,
                user=user,
                event_type="auth.api_key.expired",
            )
    if api_key.tenant_id != user.tenant_id:
        raise await _deny(
            db=db,
            request=request,
            error=_forbidden_error("Tenant mismatch for API key"),
            api_key=api_key,
            user=user,
        )

    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        raise await _deny(
            db=db, request=request, error=_forbidden_error(str(exc)), api_key=api_key, user=user
        ) from exc

    principal = Principal(
        subject_id=user.id,
        tenant_id=user.tenant_id,
        role=role,
        api_key_id=api_key.id,
        custom_role_id=user.custom_role_id,
        auth_method="api_key",
    )
    await _set_cached_principal(key_hash, principal, settings.auth_cache_ttl_s)
    now = datetime.now(timezone.utc)
    api_key.last_used_at = now
    user.last_login_at = now
    # The audit commit also persists the last-used timestamps.
    await _audit_auth(
        db=db,
        request=request,
        event_type="auth.access.success",
        outcome="success",
        tenant_id=principal.tenant_id,
        actor_type="api_key",
        actor_id=principal.api_key_id,
        actor_role=principal.role,
        metadata={"user_id": principal.subject_id},
    )
    return principal


def require_permission(permission: str):
    # Dependency factory to enforce permission strings at the route level.
    async def _dependency(
        request: Request,
        response: Response,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        custom_permissions = await load_custom_permissions(
            session=db, tenant_id=principal.tenant_id, custom_role_id=principal.custom_role_id
        )
        if not has_permission(
            role=principal.role, permission=permission, custom_permissions=custom_permissions
        ):
            request_ctx = get_request_context(request)
            await record_event(
                session=db,
                tenant_id=principal.tenant_id,
                actor_type="user",
                actor_id=principal.subject_id,
                actor_role=principal.role,
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="rbac",
                request_id=request_ctx["request_id"],
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
                metadata={**_request_metadata(request), "required_permission": permission},
                error_code="AUTH_FORBIDDEN",
                commit=True,
                best_effort=True,
            )
            raise _forbidden_error(f"Missing permission {permission}")
        # Apply rate limits after auth + permission checks to protect capacity.
        await enforce_rate_limit(request=request, response=response, principal=principal, db=db)
        return principal

    return _dependency
