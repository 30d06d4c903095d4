from __future__ import annotations

import argparse
from uuid import uuid4

import pytest
from sqlalchemy import select

from tenantadmin.domain.models import ApiKey, AuditEvent, User
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.services.auth.api_keys import KEY_PREFIX, generate_api_key, hash_api_key
from scripts.create_api_key import _create_key


def test_generated_key_embeds_id_and_hashes_deterministically() -> None:
    key_id, raw_key, key_prefix, key_hash = generate_api_key(key_id="abc123")
    assert key_id == "abc123"
    assert raw_key.startswith(f"{KEY_PREFIX}_abc123_")
    assert key_prefix == raw_key[:12]
    assert key_hash == hash_api_key(raw_key)
    assert len(key_hash) == 64

    _other_id, other_raw, _prefix, other_hash = generate_api_key()
    assert other_raw != raw_key
    assert other_hash != key_hash


@pytest.mark.asyncio
async def test_create_api_key_script_provisions_user_and_audits() -> None:
    tenant_id = f"t-keys-{uuid4().hex}"
    args = argparse.Namespace(
        tenant=tenant_id,
        role="admin",
        name="ops-laptop",
        user_id=None,
        email="ops@example.com",
        display_name="Ops",
    )
    status = await _create_key(args)
    assert status == 0

    async with SessionLocal() as session:
        users = (await session.execute(select(User).where(User.tenant_id == tenant_id))).scalars().all()
        keys = (await session.execute(select(ApiKey).where(ApiKey.tenant_id == tenant_id))).scalars().all()
        events = (
            await session.execute(
                select(AuditEvent).where(
                    AuditEvent.tenant_id == tenant_id,
                    AuditEvent.event_type == "auth.api_key.created",
                )
            )
        ).scalars().all()
    assert len(users) == 1
    assert users[0].role == "ADMIN"
    assert users[0].email == "ops@example.com"
    assert len(keys) == 1
    assert keys[0].user_id == users[0].id
    assert keys[0].name == "ops-laptop"
    assert len(events) == 1
    assert events[0].resource_id == keys[0].id


@pytest.mark.asyncio
async def test_create_api_key_script_refuses_cross_tenant_user() -> None:
    tenant_id = f"t-keys-{uuid4().hex}"
    user_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(User(id=user_id, tenant_id=tenant_id, role="TEAM", status="ACTIVE", is_active=True))
        await session.commit()

    args = argparse.Namespace(
        tenant=f"{tenant_id}-other",
        role="TEAM",
        name="wrong-tenant",
        user_id=user_id,
        email=None,
        display_name=None,
    )
    with pytest.raises(ValueError):
        await _create_key(args)
