from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Awaitable, Callable, Generator
from typing import Any, TypeVar

import psycopg
import pytest

from tutor_rag_core.db import open_pool
from tutor_rag_core.migrations.runner import apply_migrations

T = TypeVar("T")


@pytest.fixture(scope="session")
def pg_dsn() -> str:
    dsn = os.environ.get("PG_DSN")
    if not dsn:
        pytest.skip("PG_DSN not set; skipping DB integration tests")
    return dsn


@pytest.fixture(scope="session")
def pg_schema(pg_dsn: str) -> Generator[str, None, None]:
    schema = f"test_{uuid.uuid4().hex[:10]}"
    apply_migrations(pg_dsn, schema=schema)
    yield schema
    with psycopg.connect(pg_dsn) as conn:
        conn.execute(f'drop schema if exists "{schema}" cascade')
        conn.commit()


@pytest.fixture()
def with_pool(
    pg_dsn: str, pg_schema: str
) -> Callable[[Callable[[Any], Awaitable[T]]], T]:
    """
    Run `fn(pool)` against a fresh connection pool bound to the test schema.
    """

    def run(fn: Callable[[Any], Awaitable[T]]) -> T:
        async def main() -> T:
            async with open_pool(pg_dsn, schema=pg_schema, max_size=4) as pool:
                return await fn(pool)

        return asyncio.run(main())

    return run
