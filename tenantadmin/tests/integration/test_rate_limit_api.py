from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from tenantadmin.apps.api.main import create_app
from tenantadmin.apps.api import rate_limit
from tenantadmin.core.config import get_settings
from tenantadmin.domain.models import AuditEvent
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.tests.utils.auth import create_test_api_key


def _tenant_id() -> str:
    # Use unique tenant ids to avoid cross-test interference.
    return f"t-rl-{uuid4().hex}"


class _StubLimiter:
    # Stand in for the Redis-backed limiter with a fixed outcome.
    def __init__(self, *, decision: rate_limit.RateLimitDecision | None = None, error: Exception | None = None):
        self.decision = decision
        self.error = error
        self.calls: list[dict] = []

    async def check(self, **kwargs) -> rate_limit.RateLimitDecision:
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        assert self.decision is not None
        return self.decision


def _build_app(monkeypatch, limiter: _StubLimiter, **env_overrides: str):
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    for key, value in env_overrides.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    monkeypatch.setattr(rate_limit, "_get_rate_limiter", lambda: limiter)
    return create_app()


@pytest.mark.asyncio
async def test_throttled_request_returns_429_and_audits(monkeypatch) -> None:
    tenant_id = _tenant_id()
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    limiter = _StubLimiter(
        decision=rate_limit.RateLimitDecision(
            allowed=False, route_class="read", scope="tenant", retry_after_ms=1500
        )
    )
    app = _build_app(monkeypatch, limiter)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/admin/users", headers=headers)

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "2"
    assert response.headers["X-RateLimit-Scope"] == "tenant"
    error = response.json()["error"]
    assert error["code"] == "RATE_LIMITED"
    assert error["details"] == {"scope": "tenant", "route_class": "read", "retry_after_ms": 1500}
    assert limiter.calls[0]["tenant_id"] == tenant_id
    assert limiter.calls[0]["route_class"] == "read"

    async with SessionLocal() as session:
        events = (
            await session.execute(
                select(AuditEvent).where(
                    AuditEvent.tenant_id == tenant_id,
                    AuditEvent.event_type == "security.rate_limited",
                )
            )
        ).scalars().all()
    assert len(events) == 1
    assert events[0].metadata_json["path"] == "/api/admin/users"


@pytest.mark.asyncio
async def test_report_generation_uses_report_bucket(monkeypatch) -> None:
    tenant_id = _tenant_id()
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    limiter = _StubLimiter(
        decision=rate_limit.RateLimitDecision(
            allowed=False, route_class="report", scope="client", retry_after_ms=200
        )
    )
    app = _build_app(monkeypatch, limiter)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(f"/api/admin/reports/{uuid4().hex}/generate", headers=headers)
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "1"
    assert limiter.calls[0]["route_class"] == rate_limit.ROUTE_CLASS_REPORT


@pytest.mark.asyncio
async def test_limiter_failure_fails_open_by_default(monkeypatch) -> None:
    tenant_id = _tenant_id()
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    limiter = _StubLimiter(error=ConnectionError("redis down"))
    app = _build_app(monkeypatch, limiter)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/admin/users", headers=headers)
    assert response.status_code == 200
    assert response.headers["X-RateLimit-Status"] == "degraded"


@pytest.mark.asyncio
async def test_limiter_failure_can_fail_closed(monkeypatch) -> None:
    tenant_id = _tenant_id()
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    limiter = _StubLimiter(error=ConnectionError("redis down"))
    app = _build_app(monkeypatch, limiter, RL_FAIL_MODE="closed")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/admin/users", headers=headers)
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "RATE_LIMIT_UNAVAILABLE"


@pytest.mark.asyncio
async def test_rate_limit_disabled_skips_limiter(monkeypatch) -> None:
    tenant_id = _tenant_id()
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    limiter = _StubLimiter(error=AssertionError("limiter must not be called"))
    app = _build_app(monkeypatch, limiter, RATE_LIMIT_ENABLED="false")
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/admin/users", headers=headers)
    assert response.status_code == 200
    assert limiter.calls == []
