"""PostgreSQL engine helpers: bundled binaries, data cluster, out-of-process control.

The engine normally runs as a direct child of the launcher. Two other
start modes exist for machines where that is not possible:

  service: an OS service manager owns the server (POSTGRES_SERVICE_NAME)
  task:    a privileged scheduled task starts it (Windows, config flag
           ``startPostgresViaTask``)

Both are stopped out of process on shutdown.
"""

import asyncio
import logging
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

logger = logging.getLogger(__name__)

CONTROL_COMMAND_TIMEOUT = 30  # seconds

# Lower-cased fragments of the messages PostgreSQL prints before refusing to
# run under an elevated account (Windows administrators, POSIX root).
PRIVILEGE_REFUSAL_SIGNATURES = (
    "execution of postgresql by a user with administrative permissions is not permitted",
    "must be started under an unprivileged user id",
    "\"root\" execution of the postgresql server is not permitted",
    "cannot be run as root",
)

# When running as root sudo is unnecessary and may not even be installed.
IS_ROOT = (os.getuid() == 0) if hasattr(os, "getuid") else False


def _sudo() -> List[str]:
    """Return ['sudo'] prefix, or [] if already running as root."""
    return [] if IS_ROOT else ["sudo"]


def is_privilege_refusal(stderr: str) -> bool:
    # PostgreSQL wraps these messages across lines.
    text = " ".join(stderr.lower().split())
    return any(signature in text for signature in PRIVILEGE_REFUSAL_SIGNATURES)


def _exe(name: str) -> str:
    return f"{name}.exe" if platform.system() == "Windows" else name


def postgres_command(postgres_bin: str | Path, data_dir: str | Path, port: int, host: str = "127.0.0.1") -> list[str]:
    return [str(postgres_bin), "-D", str(data_dir), "-p", str(port), "-h", host]


@dataclass
class EngineBinaries:
    """Resolved paths of the bundled server tools."""

    bin_dir: Path
    initdb: Path
    postgres: Path

    def initdb_command(self, data_dir: Path) -> list[str]:
        return [str(self.initdb), "-D", str(data_dir), "-U", "postgres", "--encoding=UTF8"]

    def postgres_command(self, data_dir: Path, port: int, host: str = "127.0.0.1") -> list[str]:
        return postgres_command(self.postgres, data_dir, port, host)


def _binaries_in(bin_dir: Path) -> EngineBinaries | None:
    initdb = bin_dir / _exe("initdb")
    postgres = bin_dir / _exe("postgres")
    if initdb.is_file() and postgres.is_file():
        return EngineBinaries(bin_dir=bin_dir, initdb=initdb, postgres=postgres)
    return None


def candidate_bin_dirs(postgres_bin: str = "", resources_dir: str = "") -> list[Path]:
    """Directories that may hold the bundled initdb/postgres, most specific first."""
    candidates: list[Path] = []
    if postgres_bin:
        path = Path(postgres_bin).expanduser()
        candidates.append(path.parent if path.is_file() else path)
    if resources_dir:
        base = Path(resources_dir).expanduser()
        if platform.system() == "Windows":
            candidates.append(base / "postgres-win" / "bin")
        candidates.append(base / "postgres" / "bin")
    return candidates


def locate_bundled_binaries(postgres_bin: str = "", resources_dir: str = "") -> EngineBinaries | None:
    for bin_dir in candidate_bin_dirs(postgres_bin, resources_dir):
        binaries = _binaries_in(bin_dir)
        if binaries is not None:
            logger.info("Using PostgreSQL binaries in %s", bin_dir)
            return binaries
        logger.debug("No initdb/postgres in %s", bin_dir)
    return None


def data_dir_needs_init(data_dir: Path) -> bool:
    """True when the cluster directory is missing or empty."""
    if not data_dir.exists():
        return True
    return not any(data_dir.iterdir())


def engine_env() -> dict[str, str]:
    return {**os.environ, "PGUSER": "postgres"}


# ---------------------------------------------------------------------------
# Out-of-process control
# ---------------------------------------------------------------------------

async def run_control_command(command: Sequence[str], timeout: float = CONTROL_COMMAND_TIMEOUT) -> bool:
    """Run a short-lived control command; True on exit code 0. Never raises."""
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.warning("Could not run %s: %s", command[0], e)
        return False

    try:
        output, _ = await asyncio.wait_for(process.communicate(), timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.warning("%s timed out after %ds", " ".join(command), timeout)
        return False

    if process.returncode != 0:
        logger.warning(
            "%s failed (exit %s): %s",
            " ".join(command), process.returncode,
            output.decode("utf-8", errors="replace").strip(),
        )
        return False
    return True


def service_command(action: str, service_name: str, platform_name: str | None = None) -> list[str] | None:
    """Build the service-manager command to start or stop the engine service."""
    system = platform_name or platform.system()
    if system == "Darwin":
        return ["brew", "services", action, service_name]
    if system == "Linux":
        return [*_sudo(), "systemctl", action, service_name]
    if system == "Windows":
        return ["net", action, service_name]
    return None


def scheduled_task_command(action: str, task_name: str) -> list[str]:
    """schtasks /Run or /End for the privileged engine task."""
    flag = "/Run" if action == "start" else "/End"
    return ["schtasks", flag, "/TN", task_name]


def pg_ctl_stop_command(pg_ctl: str | Path, data_dir: str | Path) -> list[str]:
    return [str(pg_ctl), "stop", "-D", str(data_dir), "-m", "fast"]


async def start_via_service(service_name: str) -> bool:
    command = service_command("start", service_name)
    if command is None:
        logger.error("No service manager known for %s", platform.system())
        return False
    logger.info("Starting PostgreSQL service %s", service_name)
    return await run_control_command(command)


async def stop_via_service(service_name: str) -> bool:
    command = service_command("stop", service_name)
    if command is None:
        return False
    logger.info("Stopping PostgreSQL service %s", service_name)
    return await run_control_command(command)


async def start_via_task(task_name: str) -> bool:
    logger.info("Starting PostgreSQL via scheduled task %s", task_name)
    return await run_control_command(scheduled_task_command("start", task_name))


async def stop_via_task(task_name: str, postgres_bin: str = "", data_dir: str = "") -> bool:
    """Stop a task-started engine: pg_ctl when we know the cluster, else end the task."""
    if postgres_bin and data_dir:
        pg_ctl = Path(postgres_bin).parent / _exe("pg_ctl")
        if pg_ctl.is_file():
            logger.info("Stopping PostgreSQL with pg_ctl (data dir %s)", data_dir)
            if await run_control_command(pg_ctl_stop_command(pg_ctl, data_dir)):
                return True
    logger.info("Ending scheduled task %s", task_name)
    return await run_control_command(scheduled_task_command("stop", task_name))
