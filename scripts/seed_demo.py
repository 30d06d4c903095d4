from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass

from sqlalchemy import select

from tenantadmin.domain.models import Client, User
from tenantadmin.persistence.db import SessionLocal


DEMO_TENANT_ID = "t1"


@dataclass(frozen=True)
class DemoUser:
    name: str
    email: str
    role: str
    status: str
    department: str | None = None
    position: str | None = None


@dataclass(frozen=True)
class DemoClient:
    name: str
    email: str
    tier: str
    company: str | None = None


def build_demo_users() -> tuple[DemoUser, ...]:
    # A mix of roles and statuses so every saved view and quick stat shows data.
    return (
        DemoUser("Ada Admin", "ada@example.com", "ADMIN", "ACTIVE", "Operations", "Director"),
        DemoUser("Sam Super", "sam@example.com", "SUPER_ADMIN", "ACTIVE", "Platform", "Owner"),
        DemoUser("Tia Team", "tia@example.com", "TEAM", "ACTIVE", "Support", "Agent"),
        DemoUser("Tom Team", "tom@example.com", "TEAM", "INACTIVE", "Support", "Agent"),
        DemoUser("Cleo Client", "cleo@example.com", "CLIENT", "ACTIVE"),
        DemoUser("Carl Client", "carl@example.com", "CLIENT", "PENDING"),
        DemoUser("Cora Client", "cora@example.com", "CLIENT", "SUSPENDED"),
    )


def build_demo_clients() -> tuple[DemoClient, ...]:
    return (
        DemoClient("Northwind", "ops@northwind.example", "ENTERPRISE", "Northwind Traders"),
        DemoClient("Lena Park", "lena@example.com", "INDIVIDUAL"),
        DemoClient("Blue Fin", "hello@bluefin.example", "SMB", "Blue Fin LLC"),
    )


def _demo_id(prefix: str, index: int) -> str:
    # Stable ids keep reseeding idempotent.
    return f"demo-{prefix}-{index}"


async def seed_demo() -> int:
    async with SessionLocal() as session:
        existing = await session.execute(
            select(User.id).where(User.tenant_id == DEMO_TENANT_ID).limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            print("Demo tenant already seeded; skipping.")
            return 0

        users = [
            User(
                id=_demo_id("user", index),
                tenant_id=DEMO_TENANT_ID,
                name=item.name,
                email=item.email,
                role=item.role,
                status=item.status,
                department=item.department,
                position=item.position,
                is_active=True,
            )
            for index, item in enumerate(build_demo_users())
        ]
        clients = [
            Client(
                id=_demo_id("client", index),
                tenant_id=DEMO_TENANT_ID,
                name=item.name,
                email=item.email,
                tier=item.tier,
                company=item.company,
                status="ACTIVE",
            )
            for index, item in enumerate(build_demo_clients())
        ]
        session.add_all(users)
        session.add_all(clients)
        await session.commit()
        print(f"Seeded demo tenant with {len(users)} users and {len(clients)} clients.")
        return 0


def main() -> int:
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
