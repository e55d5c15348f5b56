"""Tie bootstrap, the database engine and the app server to the host's start/stop."""

import asyncio
import logging
import os
import platform
import shlex
from typing import MutableMapping, Protocol

from launcher.config import Settings
from launcher.core import engine
from launcher.core.exceptions import ProcessSpawnError
from launcher.core.orchestrator import BootstrapOrchestrator
from launcher.core.ports import find_free_port
from launcher.core.readiness import wait_for_http, wait_for_tcp
from launcher.core.supervisor import ProcessHandle, ProcessRole, ProcessSupervisor
from launcher.models.bootstrap import BootstrapResult, SetupFailureReason
from launcher.models.launch_config import LaunchConfig

logger = logging.getLogger(__name__)


class HostShell(Protocol):
    """What the desktop (or console) shell exposes to the coordinator."""

    def show_main_window(self, url: str) -> None: ...

    def show_fatal_dialog(self, reason: SetupFailureReason, message: str) -> None: ...

    def request_quit(self, exit_code: int) -> None: ...


class EngineMode:
    NONE = "none"
    CHILD = "child"
    SERVICE = "service"
    TASK = "task"


def should_quit_on_all_windows_closed(platform_name: str | None = None) -> bool:
    """macOS apps stay alive with no windows; everywhere else closing means quitting."""
    return (platform_name or platform.system()) != "Darwin"


def app_server_env(config: LaunchConfig | None, port: int,
                   base: MutableMapping[str, str] | None = None) -> dict[str, str]:
    env = dict(base if base is not None else os.environ)
    env["PORT"] = str(port)
    env["USE_LOCAL_DB"] = "true"
    if config is not None:
        env["LOCAL_DB_URL"] = config.local_db_url
        env["JWT_SECRET"] = config.jwt_secret
        env["ENCRYPTION_SALT"] = config.encryption_salt
    else:
        for key in ("LOCAL_DB_URL", "JWT_SECRET", "ENCRYPTION_SALT"):
            env.setdefault(key, "")
    return env


class LifecycleCoordinator:
    """Owns one app session: bootstrap, engine, app server, shutdown."""

    def __init__(
        self,
        settings: Settings,
        shell: HostShell,
        supervisor: ProcessSupervisor | None = None,
        orchestrator: BootstrapOrchestrator | None = None,
        environ: MutableMapping[str, str] | None = None,
    ):
        self.settings = settings
        self.shell = shell
        self.supervisor = supervisor or ProcessSupervisor(
            tail_lines=settings.stderr_tail_lines,
            shutdown_timeout=settings.shutdown_timeout_seconds,
        )
        self.orchestrator = orchestrator or BootstrapOrchestrator(settings, self.supervisor)
        self.environ = environ if environ is not None else os.environ

        self.result: BootstrapResult | None = None
        self.config: LaunchConfig | None = None
        self.app_port: int | None = None
        self.engine_mode = EngineMode.NONE
        self.started = False
        self._stopping = False

    @property
    def app_url(self) -> str | None:
        if self.app_port is None:
            return None
        return f"http://127.0.0.1:{self.app_port}"

    async def start(self) -> BootstrapResult:
        """Run bootstrap and bring the app server up, then tell the shell."""
        result = await self.orchestrator.run()
        self.result = result

        if result.failed:
            if result.reason == SetupFailureReason.ADMIN_PRIVILEGE_REFUSED:
                self.shell.show_fatal_dialog(result.reason, result.message)
                return result
            logger.error(
                "Database setup failed (%s); attempting to start anyway. %s",
                result.reason.value if result.reason else "unknown", result.message,
            )
        for warning in result.warnings:
            logger.warning("Setup warning: %s", warning.value)

        self.config = result.config
        if self.config is not None:
            self.apply_environment(self.config)
            await self._start_engine(self.config)
        else:
            logger.info("No database config (first run failed or skipped)")

        await self._start_app_server(self.config)
        await self._wait_for_app_server()

        self.started = True
        url = f"{self.app_url}{self.settings.app_health_path}" if self.app_url else ""
        self.shell.show_main_window(url)
        return result

    def apply_environment(self, config: LaunchConfig) -> None:
        self.environ["LOCAL_DB_URL"] = config.local_db_url
        self.environ["JWT_SECRET"] = config.jwt_secret
        self.environ["ENCRYPTION_SALT"] = config.encryption_salt

    # ------------------------------------------------------------------
    # Engine
    # ------------------------------------------------------------------

    async def _start_engine(self, config: LaunchConfig) -> None:
        if self.supervisor.is_running(ProcessRole.ENGINE):
            # Left running by a first-run bundled bootstrap.
            self.supervisor.get(ProcessRole.ENGINE).add_exit_callback(self._on_engine_exit)
            self.engine_mode = EngineMode.CHILD
            return

        if self.settings.postgres_service_name:
            if await engine.start_via_service(self.settings.postgres_service_name):
                self.engine_mode = EngineMode.SERVICE
            await self._wait_for_engine(config.port)
            return

        if config.start_postgres_via_task:
            if await engine.start_via_task(self.settings.postgres_task_name):
                self.engine_mode = EngineMode.TASK
            await self._wait_for_engine(config.port)
            return

        if config.has_bundled_engine:
            postgres_bin, data_dir, port = config.postgres_bin, config.postgres_data_dir, config.port
        else:
            # POSTGRES_BIN / POSTGRES_DATA_DIR / POSTGRES_PORT describe an engine set up by hand.
            postgres_bin = self.settings.postgres_bin
            data_dir = self.settings.postgres_data_dir
            port = self.settings.postgres_port
        if not postgres_bin or not data_dir:
            logger.info("Postgres not managed by the launcher (external engine); skipping startup")
            return

        command = engine.postgres_command(postgres_bin, data_dir, port, self.settings.engine_host)
        try:
            await self.supervisor.spawn(
                ProcessRole.ENGINE, command, env=engine.engine_env(), on_exit=self._on_engine_exit,
            )
        except ProcessSpawnError as e:
            logger.error("Postgres spawn error: %s", e)
            return
        self.engine_mode = EngineMode.CHILD
        await self._wait_for_engine(port)

    async def _wait_for_engine(self, port: int) -> None:
        reachable = await wait_for_tcp(
            self.settings.engine_host, port,
            self.settings.engine_tcp_max_attempts, self.settings.engine_tcp_interval_ms,
        )
        if not reachable:
            logger.warning("Postgres is not reachable on port %d; the app will report database errors", port)

    def _on_engine_exit(self, handle: ProcessHandle) -> None:
        if handle.stopping:
            return
        # No restart: the app server surfaces failing queries on its own.
        logger.error("Postgres exited unexpectedly with code %s\n%s", handle.returncode, handle.stderr_text())

    # ------------------------------------------------------------------
    # App server
    # ------------------------------------------------------------------

    async def _start_app_server(self, config: LaunchConfig | None) -> None:
        if self.supervisor.is_running(ProcessRole.APP_SERVER):
            return

        command = shlex.split(self.settings.app_server_command)
        if not command:
            logger.error("No APP_SERVER_COMMAND configured; the window will not have a server to talk to")
            return

        if config is None or not config.is_complete:
            logger.error("App server started without LOCAL_DB_URL or JWT_SECRET; login/setup will fail")

        self.app_port = self.settings.port or find_free_port()
        env = app_server_env(config, self.app_port, self.environ)
        logger.info("Starting app server on port %d", self.app_port)
        try:
            await self.supervisor.spawn(
                ProcessRole.APP_SERVER,
                command,
                env=env,
                cwd=self.settings.app_server_cwd or None,
                on_exit=self._on_app_server_exit,
            )
        except ProcessSpawnError as e:
            logger.error("Failed to start app server: %s", e)

    async def _wait_for_app_server(self) -> None:
        if not self.supervisor.is_running(ProcessRole.APP_SERVER) or self.app_port is None:
            return
        await asyncio.sleep(self.settings.app_http_initial_delay_ms / 1000)
        ready = await wait_for_http(
            f"{self.app_url}{self.settings.app_health_path}",
            self.settings.app_http_max_attempts,
            self.settings.app_http_interval_ms,
            self.settings.app_http_timeout_ms,
        )
        if not ready:
            logger.info("Server wait timed out; opening window anyway.")

    def _on_app_server_exit(self, handle: ProcessHandle) -> None:
        if handle.stopping or self._stopping:
            return
        code = handle.returncode
        if code not in (0, None) and self.started:
            logger.error("App server exited with code %s after startup; quitting\n%s", code, handle.stderr_text())
            self.shell.request_quit(code)
        else:
            logger.warning("App server exited with code %s", code)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def stop(self) -> None:
        """Stop the app server, then the engine. Safe to call more than once."""
        self._stopping = True
        await self.supervisor.kill(ProcessRole.APP_SERVER)
        await self.supervisor.kill(ProcessRole.MIGRATION)

        if self.engine_mode == EngineMode.SERVICE:
            await engine.stop_via_service(self.settings.postgres_service_name)
        elif self.engine_mode == EngineMode.TASK:
            config = self.config or LaunchConfig()
            await engine.stop_via_task(
                self.settings.postgres_task_name, config.postgres_bin, config.postgres_data_dir,
            )
        else:
            await self.supervisor.kill(ProcessRole.ENGINE)
        self.engine_mode = EngineMode.NONE
