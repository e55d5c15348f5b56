"""Bootstrap states, failure reasons and the orchestrator's result type."""

from dataclasses import dataclass, field
from enum import Enum

from launcher.models.launch_config import LaunchConfig


class BootstrapState(str, Enum):
    IDLE = "idle"
    CHECKING_EXISTING_CONFIG = "checking_existing_config"
    REUSE_CONFIG = "reuse_config"
    BOOTSTRAPPING_EXTERNAL = "bootstrapping_external"
    BOOTSTRAPPING_BUNDLED = "bootstrapping_bundled"
    READY = "ready"
    FAILED = "failed"


class SetupFailureReason(str, Enum):
    MISSING_BINARY = "missing_binary"
    ADMIN_PRIVILEGE_REFUSED = "admin_privilege_refused"
    PORT_EXHAUSTED = "port_exhausted"
    TIMEOUT = "timeout"
    MIGRATION_FAILED = "migration_failed"
    UNKNOWN = "unknown"


# Short user-facing summaries; the full stderr detail goes to the debug log.
FAILURE_MESSAGES: dict[SetupFailureReason, str] = {
    SetupFailureReason.MISSING_BINARY: (
        "The bundled PostgreSQL server was not found. Reinstall the application "
        "or set LOCAL_DB_URL to use an existing PostgreSQL server."
    ),
    SetupFailureReason.ADMIN_PRIVILEGE_REFUSED: (
        "PostgreSQL refuses to run from an administrator account.\n\n"
        "To fix this:\n"
        "  1. Close the application and start it again WITHOUT 'Run as administrator', or\n"
        "  2. Sign in with a standard (non-administrator) user account, or\n"
        "  3. Install PostgreSQL separately and set LOCAL_DB_URL to its connection string."
    ),
    SetupFailureReason.PORT_EXHAUSTED: (
        "PostgreSQL could not start on any of the configured ports."
    ),
    SetupFailureReason.TIMEOUT: (
        "PostgreSQL did not become reachable in time. Try starting the application again."
    ),
    SetupFailureReason.MIGRATION_FAILED: (
        "Database migrations did not complete; some features may not work."
    ),
    SetupFailureReason.UNKNOWN: "Database setup failed. See debug.log for details.",
}


@dataclass
class BootstrapResult:
    """Typed outcome of one orchestrator run. Never an exception."""

    state: BootstrapState
    config: LaunchConfig | None = None
    reason: SetupFailureReason | None = None
    detail: str = ""
    reused: bool = False
    warnings: list[SetupFailureReason] = field(default_factory=list)
    history: list[BootstrapState] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.state == BootstrapState.READY

    @property
    def failed(self) -> bool:
        return self.state == BootstrapState.FAILED

    @property
    def message(self) -> str:
        if self.reason is None:
            return ""
        return FAILURE_MESSAGES[self.reason]
