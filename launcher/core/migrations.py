"""Run schema migrations in a one-shot child process before the app server starts."""

import logging
import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

from launcher.core.exceptions import ProcessSpawnError
from launcher.core.supervisor import ProcessRole, ProcessSupervisor

logger = logging.getLogger(__name__)


def default_migrate_command() -> list[str]:
    return [sys.executable, "-m", "launcher.migrate"]


@dataclass
class MigrationOutcome:
    success: bool
    returncode: int | None = None
    stderr_tail: list[str] = field(default_factory=list)
    skipped: bool = False


class MigrationRunner:
    """Spawns the migrate command with the connection string in its environment.

    A failed migration is reported, never raised: the caller decides whether
    to carry on (the orchestrator always does).
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        command: list[str] | str | None = None,
        cwd: str | Path | None = None,
        timeout_seconds: float | None = 300.0,
        extra_env: dict[str, str] | None = None,
    ):
        if isinstance(command, str):
            command = shlex.split(command)
        self.supervisor = supervisor
        self.command = command or default_migrate_command()
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds
        self.extra_env = extra_env or {}

    async def run_migrations(self, connection_url: str) -> MigrationOutcome:
        env = {
            **os.environ,
            **self.extra_env,
            "USE_LOCAL_DB": "true",
            "LOCAL_DB_URL": connection_url,
        }
        logger.info("Running migrations: %s", " ".join(self.command))
        try:
            handle = await self.supervisor.run_to_completion(
                ProcessRole.MIGRATION,
                self.command,
                env=env,
                cwd=self.cwd,
                timeout=self.timeout_seconds,
            )
        except ProcessSpawnError as e:
            if isinstance(e.cause, FileNotFoundError):
                logger.debug("No migrate command at %s; skipping migrations", self.command[0])
                return MigrationOutcome(success=False, skipped=True)
            logger.error("Migrations could not start: %s", e)
            return MigrationOutcome(success=False)

        outcome = MigrationOutcome(
            success=handle.returncode == 0,
            returncode=handle.returncode,
            stderr_tail=list(handle.stderr_tail),
        )
        if outcome.success:
            logger.info("Migrations succeeded")
        else:
            logger.error(
                "Migrations finished with exit code %s; continuing startup%s",
                handle.returncode,
                f"\n{handle.stderr_text()}" if handle.stderr_tail else "",
            )
        return outcome
