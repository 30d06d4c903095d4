from __future__ import annotations

from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from tenantadmin.apps.api.main import create_app
from tenantadmin.domain.models import ExportSchedule, FilterPreset
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.tests.utils.auth import create_test_api_key, seed_users


PRESETS_URL = "/api/admin/filter-presets"


async def _create_preset(client: AsyncClient, headers: dict[str, str], **fields) -> dict:
    payload = {"name": "Sales team", "filterConfig": {"role": "TEAM"}, "isPublic": False}
    payload.update(fields)
    response = await client.post(PRESETS_URL, json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


@pytest.mark.asyncio
async def test_private_presets_are_hidden_from_other_users() -> None:
    tenant_id = f"t-preset-{uuid4().hex}"
    _raw, owner_headers, owner_id, _key = await create_test_api_key(
        tenant_id=tenant_id, role="TEAM", user_name="Owner"
    )
    _raw2, other_headers, _other_id, _key2 = await create_test_api_key(tenant_id=tenant_id, role="TEAM")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        private = await _create_preset(client, owner_headers, name="Mine")
        public = await _create_preset(client, owner_headers, name="Shared", isPublic=True)
        assert private["createdBy"] == owner_id
        assert private["creator"] == {"id": owner_id, "name": "Owner"}
        assert private["filterLogic"] == "AND"

        hidden = await client.get(f"{PRESETS_URL}/{private['id']}", headers=other_headers)
        assert hidden.status_code == 403
        assert hidden.json()["error"]["message"] == "Forbidden"

        visible = await client.get(f"{PRESETS_URL}/{public['id']}", headers=other_headers)
        assert visible.status_code == 200

        listed = await client.get(PRESETS_URL, headers=other_headers)
        assert [item["id"] for item in listed.json()["data"]["items"]] == [public["id"]]

        # Public visibility never grants edit rights.
        patched = await client.patch(
            f"{PRESETS_URL}/{public['id']}", json={"name": "Hijacked"}, headers=other_headers
        )
        assert patched.status_code == 403
        deleted = await client.delete(f"{PRESETS_URL}/{public['id']}", headers=other_headers)
        assert deleted.status_code == 403

        owner_patch = await client.patch(
            f"{PRESETS_URL}/{public['id']}",
            json={"filterConfig": {"status": "ACTIVE", "logic": "OR"}},
            headers=owner_headers,
        )
        assert owner_patch.status_code == 200
        assert owner_patch.json()["data"]["filterLogic"] == "OR"


@pytest.mark.asyncio
async def test_duplicate_names_conflict_per_owner() -> None:
    tenant_id = f"t-preset-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    _raw2, other_headers, _other, _key2 = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await _create_preset(client, headers, name="Weekly")
        duplicate = await client.post(
            PRESETS_URL, json={"name": "Weekly", "filterConfig": {}}, headers=headers
        )
        assert duplicate.status_code == 409
        assert duplicate.json()["error"]["message"] == "A preset with this name already exists"

        # Another user may reuse the name.
        await _create_preset(client, other_headers, name="Weekly")

        second = await _create_preset(client, headers, name="Monthly")
        renamed = await client.patch(
            f"{PRESETS_URL}/{second['id']}", json={"name": "Weekly"}, headers=headers
        )
        assert renamed.status_code == 409
        assert renamed.json()["error"]["message"] == "Another preset with this name already exists"

        same_name = await client.patch(
            f"{PRESETS_URL}/{first['id']}", json={"name": "Weekly"}, headers=headers
        )
        assert same_name.status_code == 200


@pytest.mark.asyncio
async def test_presets_from_other_tenants_read_as_missing() -> None:
    tenant_a = f"t-preset-a-{uuid4().hex}"
    tenant_b = f"t-preset-b-{uuid4().hex}"
    _raw_a, headers_a, _user_a, _key_a = await create_test_api_key(tenant_id=tenant_a, role="ADMIN")
    _raw_b, headers_b, _user_b, _key_b = await create_test_api_key(tenant_id=tenant_b, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        preset = await _create_preset(client, headers_a, isPublic=True)
        response = await client.get(f"{PRESETS_URL}/{preset['id']}", headers=headers_b)
        assert response.status_code == 404
        apply_response = await client.post(f"{PRESETS_URL}/{preset['id']}/apply", headers=headers_b)
        assert apply_response.status_code == 404


@pytest.mark.asyncio
async def test_apply_filters_tenant_users_and_counts_usage() -> None:
    tenant_id = f"t-preset-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    await seed_users(
        tenant_id,
        [
            {"name": "Ann Sales", "email": "ann@example.com", "role": "TEAM", "department": "Sales"},
            {"name": "Bo Support", "email": "bo@example.com", "role": "TEAM", "department": "Support"},
            {"name": "Cy Client", "email": "cy@example.com", "role": "CLIENT", "department": "Sales"},
        ],
    )
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        preset = await _create_preset(
            client,
            headers,
            filterConfig={
                "role": "TEAM",
                "conditions": [{"field": "department", "operator": "equals", "value": "Sales"}],
            },
        )
        response = await client.post(f"{PRESETS_URL}/{preset['id']}/apply", headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert [item["name"] for item in data["items"]] == ["Ann Sales"]
        # The key holder is a user in the tenant as well.
        assert data["stats"] == {"total": 4, "filtered": 1, "hasActiveFilters": True}

        await client.post(f"{PRESETS_URL}/{preset['id']}/apply", headers=headers)
        fetched = await client.get(f"{PRESETS_URL}/{preset['id']}", headers=headers)
        assert fetched.json()["data"]["usageCount"] == 2
        assert fetched.json()["data"]["lastUsedAt"] is not None


@pytest.mark.asyncio
async def test_apply_ignores_non_string_workstation_values() -> None:
    tenant_id = f"t-preset-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        preset = await _create_preset(client, headers, filterConfig={"role": ["ADMIN", "TEAM"]})
        response = await client.post(f"{PRESETS_URL}/{preset['id']}/apply", headers=headers)
    assert response.status_code == 200
    assert response.json()["data"]["stats"] == {"total": 1, "filtered": 1, "hasActiveFilters": False}


@pytest.mark.asyncio
async def test_deleting_preset_detaches_schedules() -> None:
    tenant_id = f"t-preset-{uuid4().hex}"
    _raw, headers, _user, _key = await create_test_api_key(tenant_id=tenant_id, role="ADMIN")
    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        preset = await _create_preset(client, headers)
        schedule = await client.post(
            "/api/admin/users/exports/schedule",
            json={
                "name": "Team export",
                "frequency": "daily",
                "format": "json",
                "recipients": ["lead@example.com"],
                "filterPresetId": preset["id"],
            },
            headers=headers,
        )
        assert schedule.status_code == 201
        schedule_id = schedule.json()["data"]["schedule"]["id"]

        deleted = await client.delete(f"{PRESETS_URL}/{preset['id']}", headers=headers)
        assert deleted.status_code == 200
        assert deleted.json()["data"]["message"] == "Preset deleted successfully"

    async with SessionLocal() as session:
        row = await session.get(ExportSchedule, schedule_id)
        remaining = await session.scalar(select(FilterPreset.id).where(FilterPreset.id == preset["id"]))
    assert row is not None
    assert row.filter_preset_id is None
    assert remaining is None
