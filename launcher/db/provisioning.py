"""Create the least-privileged application role and database.

Connects with a superuser URL (the bundled cluster's ``postgres`` user, or
the connection string of an external server) only to create the role, the
database, the grants and the extensions migrations depend on. The app and
the migrations then connect as the application role.
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import quote

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import ArgumentError, DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from launcher.db.exceptions import ProvisioningError
from launcher.utils.secrets import generate_secret

logger = logging.getLogger(__name__)

MAINTENANCE_DB = "postgres"
DEFAULT_PORT = 5432

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")

# SQLSTATE codes
DUPLICATE_OBJECT = "42710"
DUPLICATE_DATABASE = "42P04"


def asyncpg_url(url: str | URL) -> URL:
    """Normalize postgres:// / postgresql:// URLs to the asyncpg driver."""
    try:
        parsed = make_url(url) if isinstance(url, str) else url
    except ArgumentError as e:
        raise ProvisioningError(f"Invalid connection URL: {e}") from e
    return parsed.set(drivername="postgresql+asyncpg")


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ProvisioningError(f"Refusing to use unsafe SQL identifier: {name!r}")
    return name


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


@dataclass
class ProvisionedDatabase:
    app_url: str
    role: str
    database: str
    host: str
    port: int


class DatabaseProvisioner:
    """Idempotent role/database setup; safe to re-run against an existing cluster."""

    def __init__(self, db_name: str = "zet_asociatie", app_role: str = "zet_app"):
        self.db_name = _check_identifier(db_name)
        self.app_role = _check_identifier(app_role)

    async def provision(self, admin_url: str) -> ProvisionedDatabase:
        admin = asyncpg_url(admin_url)
        host = admin.host or "127.0.0.1"
        port = admin.port or DEFAULT_PORT
        password = generate_secret(24)

        await self._create_role_and_database(admin.set(database=MAINTENANCE_DB), password)
        await self._grant_least_privilege(admin.set(database=self.db_name))

        app_url = (
            f"postgres://{self.app_role}:{quote(password, safe='')}"
            f"@{host}:{port}/{self.db_name}"
        )
        return ProvisionedDatabase(
            app_url=app_url,
            role=self.app_role,
            database=self.db_name,
            host=host,
            port=port,
        )

    async def _create_role_and_database(self, url: URL, password: str) -> None:
        engine = create_async_engine(url, isolation_level="AUTOCOMMIT")
        try:
            async with engine.connect() as conn:
                logger.info("Creating role %s (LOGIN, NOSUPERUSER, NOCREATEDB, NOCREATEROLE)...", self.app_role)
                try:
                    await conn.execute(text(
                        f"CREATE ROLE {self.app_role} WITH LOGIN PASSWORD {_literal(password)} "
                        "NOSUPERUSER NOCREATEDB NOCREATEROLE"
                    ))
                except DBAPIError as e:
                    if _sqlstate(e) != DUPLICATE_OBJECT:
                        raise
                    # Left over from an earlier, unfinished setup; the old password is unknown.
                    logger.warning("Role %s already exists; resetting its password", self.app_role)
                    await conn.execute(text(
                        f"ALTER ROLE {self.app_role} WITH LOGIN PASSWORD {_literal(password)}"
                    ))

                logger.info("Creating database %s (owner %s)...", self.db_name, self.app_role)
                try:
                    await conn.execute(text(f"CREATE DATABASE {self.db_name} OWNER {self.app_role}"))
                except DBAPIError as e:
                    if _sqlstate(e) != DUPLICATE_DATABASE:
                        raise
                    logger.info("Database %s already exists; continuing", self.db_name)
        except SQLAlchemyError as e:
            raise ProvisioningError(f"Role/database setup failed: {e}") from e
        except OSError as e:
            raise ProvisioningError(f"Could not connect to {url.host}:{url.port}: {e}") from e
        finally:
            await engine.dispose()

    async def _grant_least_privilege(self, url: URL) -> None:
        role, db = self.app_role, self.db_name
        statements = [
            f"GRANT CONNECT ON DATABASE {db} TO {role}",
            f"GRANT USAGE ON SCHEMA public TO {role}",
            f"GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA public TO {role}",
            f"GRANT USAGE, SELECT ON ALL SEQUENCES IN SCHEMA public TO {role}",
            f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT SELECT, INSERT, UPDATE, DELETE ON TABLES TO {role}",
            f"ALTER DEFAULT PRIVILEGES IN SCHEMA public GRANT USAGE, SELECT ON SEQUENCES TO {role}",
            "REVOKE CREATE ON SCHEMA public FROM PUBLIC",
        ]

        engine = create_async_engine(url, isolation_level="AUTOCOMMIT")
        try:
            async with engine.connect() as conn:
                logger.info("Granting least privilege to %s...", role)
                for sql in statements:
                    try:
                        await conn.execute(text(sql))
                    except DBAPIError as e:
                        # Grants are best effort; newer servers already restrict PUBLIC.
                        logger.warning("Grant failed (%s...): %s", sql[:50], e.orig)

                logger.info("Creating extension pgcrypto (required by migrations)...")
                await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))
        except SQLAlchemyError as e:
            raise ProvisioningError(f"Privilege/extension setup on {db} failed: {e}") from e
        except OSError as e:
            raise ProvisioningError(f"Could not connect to {db}: {e}") from e
        finally:
            await engine.dispose()
