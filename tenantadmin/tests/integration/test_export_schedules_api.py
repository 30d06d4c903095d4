from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from tenantadmin.apps.api.main import create_app
from tenantadmin.domain.models import AuditEvent, ExportSchedule, ExportScheduleExecution
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.tests.utils.auth import create_test_api_key


SCHEDULE_URL = "/api/admin/users/exports/schedule"


def _schedule_payload(**overrides) -> dict:
    payload = {
        "name": "Weekly roster",
        "frequency": "weekly",
        "format": "csv",
        "recipients": ["ops@example.com"],
        "dayOfWeek": 1,
        "time": "08:30",
    }
    payload.update(overrides)
    return payload


async def _count_schedules(tenant_id: str) -> int:
    async with SessionLocal() as session:
        return int(
            await session.scalar(
                select(func.count(ExportSchedule.id)).where(ExportSchedule.tenant_id == tenant_id)
            )
            or 0
        )


async def _seed_schedules(tenant_id: str, user_id: str, count: int, *, is_active: bool = True) -> list[str]:
    ids = [uuid4().hex for _ in range(count)]
    async with SessionLocal() as session:
        for index, schedule_id in enumerate(ids):
            session.add(
                ExportSchedule(
                    id=schedule_id,
                    tenant_id=tenant_id,
                    user_id=user_id,
                    name=f"Seeded {index}",
                    frequency="daily",
                    format="json",
                    recipients=["seed@example.com"],
                    is_active=is_active,
                )
            )
        await session.commit()
    return ids


@pytest.mark.asyncio
async def test_create_schedule_returns_created_row() -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, user_id, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(SCHEDULE_URL, json=_schedule_payload(), headers=headers)
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["message"] == "Export schedule created successfully"
        schedule = data["schedule"]
        assert schedule["tenantId"] == tenant_id
        assert schedule["userId"] == user_id
        assert schedule["dayOfWeek"] == 1
        assert schedule["time"] == "08:30"
        assert schedule["isActive"] is True
        assert schedule["executionCount"] == 0

        listed = await client.get(SCHEDULE_URL, headers=headers)
        assert listed.status_code == 200
        assert [item["id"] for item in listed.json()["data"]["schedules"]] == [schedule["id"]]

    async with SessionLocal() as session:
        events = (
            await session.execute(
                select(AuditEvent).where(
                    AuditEvent.tenant_id == tenant_id,
                    AuditEvent.event_type == "admin.export_schedule.created",
                )
            )
        ).scalars().all()
    assert len(events) == 1
    assert events[0].resource_id == schedule["id"]


@pytest.mark.asyncio
async def test_sunday_is_a_valid_day_of_week() -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(SCHEDULE_URL, json=_schedule_payload(dayOfWeek=0), headers=headers)
    assert response.status_code == 201
    assert response.json()["data"]["schedule"]["dayOfWeek"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["name", "frequency", "format", "recipients"])
async def test_missing_required_field_creates_nothing(missing: str) -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    payload = _schedule_payload()
    payload.pop(missing)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(SCHEDULE_URL, json=payload, headers=headers)
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["message"] == "Missing required fields: name, frequency, format, recipients"
    assert await _count_schedules(tenant_id) == 0


@pytest.mark.asyncio
async def test_blank_name_counts_as_missing() -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(SCHEDULE_URL, json=_schedule_payload(name="   "), headers=headers)
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Missing required fields: name, frequency, format, recipients"
    assert await _count_schedules(tenant_id) == 0


@pytest.mark.asyncio
async def test_invalid_recipient_and_format_are_rejected() -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        bad_email = await client.post(
            SCHEDULE_URL, json=_schedule_payload(recipients=["ok@example.com", "nope"]), headers=headers
        )
        bad_format = await client.post(SCHEDULE_URL, json=_schedule_payload(format="docx"), headers=headers)
    assert bad_email.status_code == 400
    assert bad_email.json()["error"]["message"] == "One or more recipient emails are invalid"
    assert bad_format.status_code == 400
    assert bad_format.json()["error"]["message"] == "Invalid export format"
    assert await _count_schedules(tenant_id) == 0


@pytest.mark.asyncio
async def test_twenty_first_schedule_is_rejected() -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, user_id, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    await _seed_schedules(tenant_id, user_id, 20)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(SCHEDULE_URL, json=_schedule_payload(), headers=headers)
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["message"] == "Maximum number of export schedules (20) reached for this tenant"
    assert error["details"]["max_schedules"] == 20
    assert await _count_schedules(tenant_id) == 20


@pytest.mark.asyncio
async def test_toggle_flips_each_schedule_independently() -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, user_id, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    active_ids = await _seed_schedules(tenant_id, user_id, 2, is_active=True)
    inactive_ids = await _seed_schedules(tenant_id, user_id, 1, is_active=False)
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.patch(
            SCHEDULE_URL,
            json={"action": "toggleActive", "scheduleIds": active_ids + inactive_ids},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["updatedCount"] == 3

        unknown = await client.patch(
            SCHEDULE_URL, json={"action": "archive", "scheduleIds": active_ids}, headers=headers
        )
        assert unknown.status_code == 400
        assert unknown.json()["error"]["message"] == "Invalid action"

        empty = await client.patch(
            SCHEDULE_URL, json={"action": "toggleActive", "scheduleIds": []}, headers=headers
        )
        assert empty.status_code == 200
        assert empty.json()["data"]["updatedCount"] == 0

    async with SessionLocal() as session:
        rows = (
            await session.execute(select(ExportSchedule).where(ExportSchedule.tenant_id == tenant_id))
        ).scalars().all()
    flags = {row.id: row.is_active for row in rows}
    assert all(flags[schedule_id] is False for schedule_id in active_ids)
    assert flags[inactive_ids[0]] is True


@pytest.mark.asyncio
async def test_bulk_operations_stay_inside_the_tenant() -> None:
    tenant_a = f"t-sched-a-{uuid4().hex}"
    tenant_b = f"t-sched-b-{uuid4().hex}"
    _raw_a, headers_a, user_a, _key_a = await create_test_api_key(tenant_id=tenant_a, role="ADMIN")
    _raw_b, _headers_b, user_b, _key_b = await create_test_api_key(tenant_id=tenant_b, role="ADMIN")
    own_ids = await _seed_schedules(tenant_a, user_a, 2)
    foreign_ids = await _seed_schedules(tenant_b, user_b, 1)
    async with SessionLocal() as session:
        session.add(
            ExportScheduleExecution(
                id=uuid4().hex, schedule_id=own_ids[0], tenant_id=tenant_a, status="completed"
            )
        )
        await session.commit()

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        toggled = await client.patch(
            SCHEDULE_URL,
            json={"action": "toggleActive", "scheduleIds": foreign_ids},
            headers=headers_a,
        )
        assert toggled.json()["data"]["updatedCount"] == 0

        missing_ids = await client.delete(SCHEDULE_URL, headers=headers_a)
        assert missing_ids.status_code == 400
        assert missing_ids.json()["error"]["message"] == "No schedule IDs provided"

        ids = ",".join(own_ids + foreign_ids)
        deleted = await client.delete(SCHEDULE_URL, params={"ids": ids}, headers=headers_a)
        assert deleted.status_code == 200
        data = deleted.json()["data"]
        assert data["deletedCount"] == 2
        assert data["message"] == "2 schedule(s) deleted"

    assert await _count_schedules(tenant_a) == 0
    assert await _count_schedules(tenant_b) == 1
    async with SessionLocal() as session:
        remaining = (
            await session.execute(
                select(ExportSchedule).where(ExportSchedule.id == foreign_ids[0])
            )
        ).scalar_one()
        executions = await session.scalar(
            select(func.count(ExportScheduleExecution.id)).where(
                ExportScheduleExecution.tenant_id == tenant_a
            )
        )
    assert remaining.is_active is True
    assert executions == 0


@pytest.mark.asyncio
async def test_team_member_cannot_manage_schedules() -> None:
    tenant_id = f"t-sched-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="TEAM")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(SCHEDULE_URL, json=_schedule_payload(), headers=headers)
    assert response.status_code == 403
    assert response.json()["error"]["message"] == "Missing permission admin:users:export"
