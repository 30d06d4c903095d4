from __future__ import annotations

import asyncio
import os
import tempfile

# Point the engine at a throwaway SQLite file before any tenantadmin module builds it.
_DB_DIR = tempfile.mkdtemp(prefix="tenantadmin-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/tenantadmin.db"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["AUTH_DEV_BYPASS"] = "false"

import pytest  # noqa: E402

from tenantadmin.apps.api import rate_limit  # noqa: E402
from tenantadmin.apps.api.deps import clear_auth_cache  # noqa: E402
from tenantadmin.core.config import get_settings  # noqa: E402
from tenantadmin.domain.models import Base  # noqa: E402
from tenantadmin.persistence.db import engine  # noqa: E402


async def _create_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    await engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def database_schema() -> None:
    # Build the schema on its own loop; per-test loops open fresh connections.
    asyncio.run(_create_schema())
    yield


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Cached principals, settings and limiters must not leak between tests.
    clear_auth_cache()
    yield
    clear_auth_cache()
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
