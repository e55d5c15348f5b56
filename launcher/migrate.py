"""Small SQL migration runner for the local PostgreSQL instance.

Usage (LOCAL_DB_URL and USE_LOCAL_DB are injected by the launcher):

    USE_LOCAL_DB=true LOCAL_DB_URL=postgres://... python -m launcher.migrate

Applies every ``*.sql`` file in MIGRATIONS_DIR (default ``db/migrations``)
that is not yet recorded in the ``migrations`` table, in filename order,
each inside its own transaction. Whitespace-only files are skipped and
left unrecorded. Exits 0 on success, 1 on the first failure.
"""

import asyncio
import logging
import os
import sys
from pathlib import Path

import asyncpg

from launcher.utils.debug_log import configure_logging

logger = logging.getLogger("launcher.migrate")

DEFAULT_MIGRATIONS_DIR = "db/migrations"

CREATE_MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS migrations (
  id serial PRIMARY KEY,
  name text NOT NULL UNIQUE,
  applied_at timestamptz NOT NULL DEFAULT now()
);
"""


def discover_migrations(migrations_dir: Path) -> list[Path]:
    if not migrations_dir.is_dir():
        return []
    return sorted(p for p in migrations_dir.iterdir() if p.suffix == ".sql" and p.is_file())


def driver_dsn(url: str) -> str:
    """asyncpg accepts postgres:// and postgresql:// but not SQLAlchemy driver suffixes."""
    scheme, sep, rest = url.partition("://")
    if sep and "+" in scheme:
        scheme = scheme.split("+", 1)[0]
    return f"{scheme}{sep}{rest}"


async def get_applied_migrations(conn: asyncpg.Connection) -> set[str]:
    await conn.execute(CREATE_MIGRATIONS_TABLE)
    rows = await conn.fetch("SELECT name FROM migrations ORDER BY applied_at ASC")
    return {row["name"] for row in rows}


async def apply_migration(conn: asyncpg.Connection, name: str, sql: str) -> None:
    logger.info("Applying migration: %s", name)
    async with conn.transaction():
        await conn.execute(sql)
        await conn.execute(
            "INSERT INTO migrations (name, applied_at) VALUES ($1, now())",
            name,
        )


async def run(connection_url: str, migrations_dir: Path) -> int:
    files = discover_migrations(migrations_dir)
    if not files:
        logger.info("No migrations found in %s", migrations_dir)
        return 0

    try:
        conn = await asyncpg.connect(driver_dsn(connection_url))
    except (OSError, asyncpg.PostgresError) as e:
        logger.error("Could not connect to the database: %s", e)
        return 1

    try:
        applied = await get_applied_migrations(conn)
        pending = [p for p in files if p.name not in applied]
        if not pending:
            logger.info("Database is up to date (%d migrations applied)", len(applied))
            return 0
        applied_now = 0
        for path in pending:
            sql = path.read_text(encoding="utf-8")
            # Not recorded, so content added later still runs.
            if not sql.strip():
                logger.info("Skipping empty migration file: %s", path.name)
                continue
            try:
                await apply_migration(conn, path.name, sql)
            except asyncpg.PostgresError as e:
                logger.error("Failed to apply migration %s: %s", path.name, e)
                return 1
            applied_now += 1
        logger.info("Applied %d migration(s)", applied_now)
        return 0
    finally:
        await conn.close()


def main() -> int:
    configure_logging(os.environ.get("LAUNCHER_LOG_LEVEL", "info"))
    if os.environ.get("USE_LOCAL_DB") != "true":
        logger.error("Refusing to run migrations because USE_LOCAL_DB is not set to 'true'.")
        return 1
    connection_url = os.environ.get("LOCAL_DB_URL", "")
    if not connection_url:
        logger.error("LOCAL_DB_URL is not set.")
        return 1
    migrations_dir = Path(os.environ.get("MIGRATIONS_DIR", DEFAULT_MIGRATIONS_DIR))
    return asyncio.run(run(connection_url, migrations_dir))


if __name__ == "__main__":
    sys.exit(main())
