"""Root conftest: Postgres testcontainer fixtures shared by every test tree.

Integration tests request ``postgres_container`` (one container per session)
and then provision an isolated database per test, so rows and schemas never
leak between tests.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from testcontainers.postgres import PostgresContainer

    from calsync.db import Database

docker_available = shutil.which("docker") is not None


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this session."""
    if not docker_available:
        pytest.skip("Docker not available")
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_database(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Database]]:
    """Create a fresh database, optionally migrated, for a single test usage.

    Tests use this as::

        async with provisioned_database(migrate=True) as db:
            store = PostgresCalendarStore(db)
    """
    from calsync.db import Database
    from calsync.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        migrate: bool = False,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Database]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        if migrate:
            await run_migrations(db.dsn)
        await db.connect()
        try:
            yield db
        finally:
            await db.close()

    return _provision
