from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from tenantadmin.apps.api.main import create_app
from tenantadmin.core.config import get_settings
from tenantadmin.domain.models import ApiKey, AuditEvent
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.tests.utils.auth import create_test_api_key


USERS_URL = "/api/admin/users"


async def _events(tenant_id: str | None, event_type: str) -> list[AuditEvent]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditEvent).where(
                AuditEvent.tenant_id == tenant_id if tenant_id else AuditEvent.tenant_id.is_(None),
                AuditEvent.event_type == event_type,
            )
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_protected_endpoint_requires_auth() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        missing = await client.get(USERS_URL)
        malformed = await client.get(USERS_URL, headers={"Authorization": "Token abc"})
        unknown = await client.get(USERS_URL, headers={"Authorization": "Bearer tadm_nope_nope"})

    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"] == "Bearer"
    assert missing.json()["error"] == {"code": "AUTH_UNAUTHORIZED", "message": "Missing API key"}
    assert malformed.status_code == 401
    assert malformed.json()["error"]["message"] == "Missing or invalid bearer token"
    assert unknown.status_code == 401
    assert unknown.json()["error"]["message"] == "Invalid API key"


@pytest.mark.asyncio
async def test_valid_key_records_success_and_last_used() -> None:
    tenant_id = f"t-auth-{uuid4().hex}"
    _raw, headers, user_id, key_id = await create_test_api_key(tenant_id=tenant_id, role="TEAM")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(USERS_URL, headers=headers)
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == response.json()["meta"]["request_id"]

    async with SessionLocal() as session:
        key = await session.get(ApiKey, key_id)
    assert key is not None
    assert key.last_used_at is not None
    events = await _events(tenant_id, "auth.access.success")
    assert len(events) == 1
    assert events[0].actor_id == key_id
    assert events[0].metadata_json["user_id"] == user_id


@pytest.mark.asyncio
async def test_revoked_inactive_and_expired_keys_are_rejected() -> None:
    tenant_id = f"t-auth-{uuid4().hex}"
    _raw1, revoked_headers, _u1, _k1 = await create_test_api_key(
        tenant_id=tenant_id, role="ADMIN", key_revoked=True
    )
    _raw2, inactive_headers, _u2, _k2 = await create_test_api_key(
        tenant_id=tenant_id, role="ADMIN", user_active=False
    )
    _raw3, expired_headers, _u3, expired_key = await create_test_api_key(
        tenant_id=tenant_id,
        role="ADMIN",
        key_expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
    )
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        revoked = await client.get(USERS_URL, headers=revoked_headers)
        inactive = await client.get(USERS_URL, headers=inactive_headers)
        expired = await client.get(USERS_URL, headers=expired_headers)

    assert revoked.status_code == 401
    assert revoked.json()["error"]["message"] == "API key is revoked or inactive"
    assert inactive.status_code == 401
    assert expired.status_code == 401
    assert expired.json()["error"]["message"] == "API key expired"

    failures = await _events(tenant_id, "auth.access.failure")
    assert len(failures) == 2
    expirations = await _events(tenant_id, "auth.api_key.expired")
    assert [event.actor_id for event in expirations] == [expired_key]


@pytest.mark.asyncio
async def test_missing_permission_is_forbidden_and_audited() -> None:
    tenant_id = f"t-auth-{uuid4().hex}"
    _raw, headers, user_id, _key = await create_test_api_key(tenant_id=tenant_id, role="TEAM")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            USERS_URL, json={"name": "New", "email": "new@example.com"}, headers=headers
        )
    assert response.status_code == 403
    assert response.json()["error"] == {
        "code": "AUTH_FORBIDDEN",
        "message": "Missing permission admin:users:write",
    }
    events = await _events(tenant_id, "rbac.forbidden")
    assert len(events) == 1
    assert events[0].actor_id == user_id
    assert events[0].metadata_json["required_permission"] == "admin:users:write"


@pytest.mark.asyncio
async def test_tenant_isolation_for_users() -> None:
    tenant_a = f"t-auth-a-{uuid4().hex}"
    tenant_b = f"t-auth-b-{uuid4().hex}"
    _raw_a, headers_a, user_a, _key_a = await create_test_api_key(tenant_id=tenant_a, role="ADMIN")
    _raw_b, headers_b, _user_b, _key_b = await create_test_api_key(tenant_id=tenant_b, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        listed = await client.get(USERS_URL, headers=headers_b)
        assert user_a not in [item["id"] for item in listed.json()["data"]["items"]]
        cross = await client.get(f"{USERS_URL}/{user_a}", headers=headers_b)
        assert cross.status_code == 404
        cross_delete = await client.delete(f"{USERS_URL}/{user_a}", headers=headers_b)
        assert cross_delete.status_code == 404
        own = await client.get(f"{USERS_URL}/{user_a}", headers=headers_a)
        assert own.status_code == 200


@pytest.mark.asyncio
async def test_dev_bypass_headers(monkeypatch) -> None:
    tenant_id = f"t-auth-{uuid4().hex}"
    monkeypatch.setenv("AUTH_DEV_BYPASS", "true")
    get_settings.cache_clear()
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        allowed = await client.get(
            USERS_URL, headers={"X-Tenant-Id": tenant_id, "X-Role": "team"}
        )
        no_tenant = await client.get(USERS_URL)
        bad_role = await client.get(USERS_URL, headers={"X-Tenant-Id": tenant_id, "X-Role": "owner"})
    assert allowed.status_code == 200
    assert no_tenant.status_code == 401
    assert bad_role.status_code == 400
    assert bad_role.json()["error"]["code"] == "AUTH_INVALID_ROLE"


@pytest.mark.asyncio
async def test_health_is_public() -> None:
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/health", headers={"X-Request-Id": "req-health"})
        missing_route = await client.get("/api/nope")
    assert response.status_code == 200
    assert response.json() == {"data": {"status": "ok"}, "meta": {"request_id": "req-health", "api_version": "v1"}}
    assert missing_route.status_code == 404
    assert missing_route.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_malformed_body_is_validation_error() -> None:
    tenant_id = f"t-auth-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(USERS_URL, json={"name": "No email"}, headers=headers)
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "VALIDATION_ERROR"
    assert error["message"].startswith("email:")
