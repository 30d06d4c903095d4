from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from tenantadmin.domain.models import ApiKey, User
from tenantadmin.persistence.db import SessionLocal
from tenantadmin.services.audit import record_event
from tenantadmin.services.auth.api_keys import generate_api_key
from tenantadmin.services.permissions import normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an admin API key for a tenant user")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--role", required=True, help="Role: CLIENT|TEAM|ADMIN|SUPER_ADMIN")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--email", default=None, help="Optional user email")
    parser.add_argument("--display-name", default=None, help="Optional user display name")
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        if user is None:
            user = User(
                id=user_id,
                tenant_id=args.tenant,
                name=args.display_name,
                email=args.email,
                role=role,
                status="ACTIVE",
                is_active=True,
            )
            session.add(user)
        else:
            # Keys never move a user across tenants.
            if user.tenant_id != args.tenant:
                raise ValueError("User tenant_id does not match requested tenant")
            user.role = role
            if args.email:
                user.email = args.email
        # The key row references the user, so the user must exist first.
        await session.flush()

        session.add(
            ApiKey(
                id=key_id,
                user_id=user.id,
                tenant_id=user.tenant_id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
            )
        )
        await session.commit()

        await record_event(
            session=session,
            tenant_id=user.tenant_id,
            actor_type="system",
            actor_id="create_api_key",
            actor_role=role,
            event_type="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=key_id,
            metadata={"user_id": user.id, "key_prefix": key_prefix, "key_name": args.name},
            commit=True,
            best_effort=False,
        )

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  user_id: {user_id}")
    print(f"  key_prefix: {key_prefix}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
