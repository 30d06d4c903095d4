from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from tenantadmin.domain.models import ApiKey, User
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.services.auth.api_keys import generate_api_key
from tenantadmin.services.permissions import normalize_role


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_test_api_key(
    *,
    tenant_id: str,
    role: str,
    name: str = "test-key",
    user_name: str | None = None,
    email: str | None = None,
    user_active: bool = True,
    key_revoked: bool = False,
    key_expires_at: datetime | None = None,
    custom_role_id: str | None = None,
) -> tuple[str, dict[str, str], str, str]:
    # Provision a user + API key pair for integration tests.
    normalized_role = normalize_role(role)
    user_id = uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        user = User(
            id=user_id,
            tenant_id=tenant_id,
            name=user_name or f"Test {normalized_role.title()}",
            email=email or f"{user_id}@example.com",
            role=normalized_role,
            status="ACTIVE" if user_active else "INACTIVE",
            custom_role_id=custom_role_id,
            is_active=user_active,
        )
        session.add(user)
        # Flush the user insert before the API key to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=key_id,
                user_id=user.id,
                tenant_id=tenant_id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=name,
                expires_at=key_expires_at,
                revoked_at=_utc_now() if key_revoked else None,
            )
        )
        await session.commit()

    headers = {"Authorization": f"Bearer {raw_key}"}
    return raw_key, headers, user_id, key_id


async def seed_users(tenant_id: str, users: list[dict]) -> list[str]:
    # Insert plain user rows (no keys) for listing and report tests.
    ids: list[str] = []
    async with SessionLocal() as session:
        for values in users:
            user_id = values.get("id") or uuid4().hex
            session.add(
                User(
                    id=user_id,
                    tenant_id=tenant_id,
                    name=values.get("name"),
                    email=values.get("email"),
                    phone=values.get("phone"),
                    role=values.get("role", "CLIENT"),
                    status=values.get("status", "ACTIVE"),
                    availability_status=values.get("availability_status"),
                    department=values.get("department"),
                    position=values.get("position"),
                    is_active=True,
                )
            )
            ids.append(user_id)
        await session.commit()
    return ids
