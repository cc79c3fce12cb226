from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from psycopg_pool import AsyncConnectionPool
from pydantic import SecretStr


@dataclass(frozen=True)
class PostgresConfig:
    dsn: str | None = None
    host: str | None = None
    port: int = 5432
    db: str | None = None
    user: str | None = None
    password: SecretStr | str | None = None

    def build_dsn(self) -> str:
        if self.dsn:
            return self.dsn
        missing = []
        if not self.host:
            missing.append("POSTGRES_HOST")
        if not self.db:
            missing.append("POSTGRES_DB")
        if not self.user:
            missing.append("POSTGRES_USER")
        if not self.password:
            missing.append("POSTGRES_PASSWORD")
        if missing:
            raise ValueError(f"Missing Postgres config: {', '.join(missing)} (or set PG_DSN)")
        password = (
            self.password.get_secret_value()
            if isinstance(self.password, SecretStr)
            else self.password
        )
        return (
            f"postgresql://{self.user}:{password}"
            f"@{self.host}:{self.port}/{self.db}"
        )


@asynccontextmanager
async def open_pool(
    dsn: str,
    *,
    schema: str = "public",
    min_size: int = 1,
    max_size: int = 10,
) -> AsyncIterator[AsyncConnectionPool]:
    """
    Connection pool for the repositories. Each unit of work borrows its own connection, so
    concurrent coroutines never share a transaction.
    """
    options = f"-c search_path={schema} -c timezone=UTC"
    pool = AsyncConnectionPool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        kwargs={"options": options},
        open=False,
    )
    async with pool:
        yield pool
