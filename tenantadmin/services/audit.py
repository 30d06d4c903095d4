from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from tenantadmin.domain.models import AuditEvent
from tenantadmin.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "email_body"]
_REDACTED_VALUE = "[REDACTED]"


class AuditActor(Protocol):
    # Minimal principal shape needed to attribute admin actions.
    subject_id: str
    tenant_id: str
    role: str


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def client_identifier(request: Request | None) -> str:
    # Prefer the first forwarded hop so proxied callers are not pooled under the proxy address.
    if request is None:
        return "anonymous"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "anonymous"


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    return {
        "request_id": request_id,
        "ip_address": client_identifier(request),
        "user_agent": request.headers.get("user-agent"),
    }


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner to avoid breaking admin flows.
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        ip_address=ip_address,
        user_agent=user_agent,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                level = logger.warning if best_effort else logger.error
                level(
                    "audit_event_write_failed event_type=%s request_id=%s",
                    event_type,
                    request_id,
                    exc_info=exc,
                )
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        level = logger.warning if best_effort else logger.error
        level(
            "audit_event_write_failed event_type=%s request_id=%s",
            event_type,
            request_id,
            exc_info=exc,
        )


async def audit_action(
    *,
    db: AsyncSession,
    principal: AuditActor,
    request: Request,
    event_type: str,
    outcome: str = "success",
    resource_type: str | None = None,
    resource_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    # Attribute admin mutations to the calling user with consistent request context.
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=principal.tenant_id,
        actor_type="user",
        actor_id=principal.subject_id,
        actor_role=principal.role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata=metadata,
        error_code=error_code,
        commit=True,
        best_effort=True,
    )
