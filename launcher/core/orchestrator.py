"""First-run bootstrap state machine.

    idle → checking_existing_config → reuse_config          → ready
                                    → bootstrapping_external → ready | failed
                                    → bootstrapping_bundled  → ready | failed

``run()`` never raises: every outcome, including unexpected errors, is a
``BootstrapResult``. The host-facing decisions (modal, quit, best-effort
start) belong to the lifecycle coordinator.
"""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Protocol

from launcher.config import Settings
from launcher.core import engine
from launcher.core.engine import EngineBinaries
from launcher.core.exceptions import PortExhaustedError, PrivilegeRefusedError, ProcessSpawnError
from launcher.core.migrations import MigrationOutcome, MigrationRunner
from launcher.core.ports import AttemptVerdict, PortAllocator, PortAttempt
from launcher.core.supervisor import ProcessHandle, ProcessRole, ProcessSupervisor
from launcher.db.config_store import ConfigStore
from launcher.db.exceptions import ConfigStoreError, ProvisioningError
from launcher.db.provisioning import DatabaseProvisioner, ProvisionedDatabase
from launcher.models.bootstrap import BootstrapResult, BootstrapState, SetupFailureReason
from launcher.models.launch_config import LaunchConfig
from launcher.utils.secrets import generate_secret

logger = logging.getLogger(__name__)

INITDB_TIMEOUT = 120  # seconds


class Provisioner(Protocol):
    async def provision(self, admin_url: str) -> ProvisionedDatabase: ...


class Migrator(Protocol):
    async def run_migrations(self, connection_url: str) -> MigrationOutcome: ...


BinaryLocator = Callable[[], EngineBinaries | None]


class BootstrapOrchestrator:
    """Decides between reusing config, an external engine and the bundled engine."""

    def __init__(
        self,
        settings: Settings,
        supervisor: ProcessSupervisor,
        config_store: ConfigStore | None = None,
        port_allocator: PortAllocator | None = None,
        migration_runner: Migrator | None = None,
        provisioner: Provisioner | None = None,
        locate_binaries: BinaryLocator | None = None,
    ):
        self.settings = settings
        self.supervisor = supervisor
        self.config_store = config_store or ConfigStore(settings.config_path)
        self.port_allocator = port_allocator or PortAllocator(
            supervisor,
            host=settings.engine_host,
            grace_window_seconds=settings.engine_grace_window_seconds,
            tcp_max_attempts=settings.engine_tcp_max_attempts,
            tcp_interval_ms=settings.engine_tcp_interval_ms,
        )
        self.migration_runner = migration_runner or MigrationRunner(
            supervisor,
            command=settings.migrate_command or None,
            timeout_seconds=settings.migration_timeout_seconds,
            extra_env={"MIGRATIONS_DIR": settings.migrations_dir},
        )
        self.provisioner = provisioner or DatabaseProvisioner(
            db_name=settings.db_name, app_role=settings.db_app_role,
        )
        self.locate_binaries = locate_binaries or (
            lambda: engine.locate_bundled_binaries(settings.postgres_bin, settings.bundled_resources_dir)
        )
        self.state = BootstrapState.IDLE
        self.history: list[BootstrapState] = [BootstrapState.IDLE]
        self._engine_handle: ProcessHandle | None = None

    def _transition(self, state: BootstrapState) -> None:
        logger.info("Bootstrap: %s → %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _ready(self, config: LaunchConfig, reused: bool = False,
               migration: MigrationOutcome | None = None) -> BootstrapResult:
        self._transition(BootstrapState.READY)
        warnings = []
        if migration is not None and not migration.success and not migration.skipped:
            warnings.append(SetupFailureReason.MIGRATION_FAILED)
        return BootstrapResult(
            state=BootstrapState.READY,
            config=config,
            reused=reused,
            warnings=warnings,
            history=list(self.history),
        )

    def _failed(self, reason: SetupFailureReason, detail: str = "") -> BootstrapResult:
        self._transition(BootstrapState.FAILED)
        logger.error("Bootstrap failed: %s%s", reason.value, f"\n{detail}" if detail else "")
        return BootstrapResult(
            state=BootstrapState.FAILED,
            reason=reason,
            detail=detail,
            history=list(self.history),
        )

    async def run(self) -> BootstrapResult:
        try:
            return await self._run()
        except Exception as e:
            logger.exception("Unexpected error during bootstrap")
            await self._release_engine()
            return self._failed(SetupFailureReason.UNKNOWN, f"{type(e).__name__}: {e}")

    async def _run(self) -> BootstrapResult:
        self._transition(BootstrapState.CHECKING_EXISTING_CONFIG)
        existing = self.config_store.load()
        if existing is not None:
            self._transition(BootstrapState.REUSE_CONFIG)
            return self._ready(existing, reused=True)

        if self.settings.local_db_url:
            self._transition(BootstrapState.BOOTSTRAPPING_EXTERNAL)
            return await self._bootstrap_external(self.settings.local_db_url)

        self._transition(BootstrapState.BOOTSTRAPPING_BUNDLED)
        return await self._bootstrap_bundled()

    def _secrets(self) -> tuple[str, str]:
        return (
            self.settings.jwt_secret or generate_secret(),
            self.settings.encryption_salt or generate_secret(),
        )

    # ------------------------------------------------------------------
    # External engine
    # ------------------------------------------------------------------

    async def _bootstrap_external(self, connection_url: str) -> BootstrapResult:
        """Create role + database on a server we do not manage, then migrate."""
        try:
            provisioned = await self.provisioner.provision(connection_url)
        except ProvisioningError as e:
            return self._failed(SetupFailureReason.UNKNOWN, str(e))

        migration = await self.migration_runner.run_migrations(provisioned.app_url)

        jwt_secret, encryption_salt = self._secrets()
        config = LaunchConfig(
            local_db_url=provisioned.app_url,
            jwt_secret=jwt_secret,
            encryption_salt=encryption_salt,
            port=provisioned.port,
        )
        try:
            self.config_store.save(config)
        except ConfigStoreError as e:
            return self._failed(SetupFailureReason.UNKNOWN, str(e))
        return self._ready(config, migration=migration)

    # ------------------------------------------------------------------
    # Bundled engine
    # ------------------------------------------------------------------

    async def _bootstrap_bundled(self) -> BootstrapResult:
        binaries = self.locate_binaries()
        if binaries is None:
            searched = engine.candidate_bin_dirs(self.settings.postgres_bin, self.settings.bundled_resources_dir)
            return self._failed(
                SetupFailureReason.MISSING_BINARY,
                "initdb/postgres not found in: " + (", ".join(str(p) for p in searched) or "(no candidates)"),
            )

        data_dir = self.settings.engine_data_dir
        if engine.data_dir_needs_init(data_dir):
            failure = await self._init_cluster(binaries, data_dir)
            if failure is not None:
                return failure

        async def start(port: int) -> ProcessHandle:
            return await self.supervisor.spawn(
                ProcessRole.ENGINE,
                binaries.postgres_command(data_dir, port, self.settings.engine_host),
                env=engine.engine_env(),
            )

        try:
            assignment = await self.port_allocator.choose_port_with_fallback(
                self.settings.engine_ports, start, on_failed_attempt=self._check_privilege_refusal,
            )
        except PrivilegeRefusedError as e:
            return self._failed(SetupFailureReason.ADMIN_PRIVILEGE_REFUSED, e.stderr)
        except PortExhaustedError as e:
            return self._failed(self._exhaustion_reason(e.attempts), e.detail)
        except ProcessSpawnError as e:
            return self._failed(SetupFailureReason.MISSING_BINARY, str(e))

        self._engine_handle = assignment.handle
        port = assignment.port

        # The engine may accept TCP connections before it finishes starting up.
        await asyncio.sleep(self.settings.engine_settle_delay_seconds)

        admin_url = f"postgres://postgres@{self.settings.engine_host}:{port}/postgres"
        try:
            provisioned = await self.provisioner.provision(admin_url)
        except ProvisioningError as e:
            await self._release_engine()
            return self._failed(SetupFailureReason.UNKNOWN, str(e))

        migration = await self.migration_runner.run_migrations(provisioned.app_url)

        jwt_secret, encryption_salt = self._secrets()
        config = LaunchConfig(
            local_db_url=provisioned.app_url,
            jwt_secret=jwt_secret,
            encryption_salt=encryption_salt,
            postgres_bin=str(binaries.postgres),
            postgres_data_dir=str(data_dir),
            port=port,
        )
        try:
            self.config_store.save(config)
        except ConfigStoreError as e:
            await self._release_engine()
            return self._failed(SetupFailureReason.UNKNOWN, str(e))

        logger.info("First-run setup complete. Config at %s", self.config_store.path)
        return self._ready(config, migration=migration)

    async def _init_cluster(self, binaries: EngineBinaries, data_dir: Path) -> BootstrapResult | None:
        logger.info("Running initdb in %s...", data_dir)
        try:
            data_dir.parent.mkdir(parents=True, exist_ok=True)
            handle = await self.supervisor.run_to_completion(
                ProcessRole.ENGINE,
                binaries.initdb_command(data_dir),
                env=engine.engine_env(),
                timeout=INITDB_TIMEOUT,
            )
        except ProcessSpawnError as e:
            return self._failed(SetupFailureReason.MISSING_BINARY, str(e))

        if handle.returncode != 0:
            detail = handle.stderr_text()
            if engine.is_privilege_refusal(detail):
                return self._failed(SetupFailureReason.ADMIN_PRIVILEGE_REFUSED, detail)
            return self._failed(
                SetupFailureReason.UNKNOWN,
                f"initdb failed with exit code {handle.returncode}\n{detail}".rstrip(),
            )
        return None

    @staticmethod
    def _check_privilege_refusal(attempt: PortAttempt) -> None:
        if attempt.verdict == AttemptVerdict.EXITED and engine.is_privilege_refusal(attempt.detail):
            raise PrivilegeRefusedError(attempt.port, attempt.detail)

    @staticmethod
    def _exhaustion_reason(attempts: list[PortAttempt]) -> SetupFailureReason:
        # An engine that stayed up but never answered on any port is a timeout, not a port conflict.
        if attempts and all(a.verdict == AttemptVerdict.TIMEOUT for a in attempts):
            return SetupFailureReason.TIMEOUT
        return SetupFailureReason.PORT_EXHAUSTED

    async def _release_engine(self) -> None:
        if self._engine_handle is not None:
            await self.supervisor.kill(self._engine_handle)
            self._engine_handle = None
