from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

import psycopg

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path


def _migrations_dir() -> Path:
    return Path(__file__).resolve().parent / "sql"


def discover_migrations() -> list[Migration]:
    return [Migration(version=p.stem, path=p) for p in sorted(_migrations_dir().glob("*.sql"))]


def _prepare(conn: psycopg.Connection, schema: str) -> set[str]:
    conn.execute(f'create schema if not exists "{schema}"')
    conn.execute(f'set search_path to "{schema}"')
    conn.execute(
        """
        create table if not exists schema_migrations (
          version text primary key,
          applied_at timestamptz not null default now()
        )
        """
    )
    rows = conn.execute("select version from schema_migrations").fetchall()
    return {r[0] for r in rows}


def apply_migrations(
    dsn: str,
    *,
    schema: str = "public",
    migrations: Iterable[Migration] | None = None,
) -> list[str]:
    """
    Applies the catalog schema (documents, chunks, stage events, conversations) into `schema`.

    Already-recorded versions are skipped, so this is safe to run on every deploy.
    """
    if migrations is None:
        migrations = discover_migrations()

    applied: list[str] = []
    with psycopg.connect(dsn) as conn:
        conn.execute("set timezone to 'UTC'")
        done = _prepare(conn, schema)

        for mig in migrations:
            if mig.version in done:
                continue
            conn.execute(mig.path.read_text(encoding="utf-8"))
            conn.execute("insert into schema_migrations(version) values (%s)", (mig.version,))
            conn.commit()
            logger.info("Applied migration %s to schema %s", mig.version, schema)
            applied.append(mig.version)

    return applied


def main() -> None:
    from tutor_rag_core.config import load_settings
    from tutor_rag_core.db import PostgresConfig
    from tutor_rag_core.logging_setup import configure_logging

    settings = load_settings()
    configure_logging(settings.log_level)
    applied = apply_migrations(PostgresConfig(dsn=settings.pg_dsn).build_dsn())
    logger.info("%d migration(s) applied", len(applied))


if __name__ == "__main__":
    main()
