"""Process and port exceptions raised inside the launcher.

The bootstrap orchestrator converts every one of these into a typed
``BootstrapResult``; none of them reach the host shell.
"""


class LauncherError(Exception):
    """Base exception for launcher process management."""

    pass


class ProcessSpawnError(LauncherError):
    """Raised when a child process cannot be started at all."""

    def __init__(self, role: str, command: str, cause: Exception):
        super().__init__(f"Could not start {role} process ({command}): {cause}")
        self.role = role
        self.command = command
        self.cause = cause


class PortExhaustedError(LauncherError):
    """Raised when every port in the fallback list failed."""

    def __init__(self, attempts: list):
        ports = ", ".join(str(a.port) for a in attempts)
        super().__init__(f"No usable port after trying: {ports}")
        self.attempts = attempts

    @property
    def detail(self) -> str:
        return "\n".join(
            f"port {a.port}: {a.verdict.value}\n{a.detail}".rstrip() for a in self.attempts
        )


class PrivilegeRefusedError(LauncherError):
    """Raised when the engine refuses to run under an elevated account."""

    def __init__(self, port: int, stderr: str):
        super().__init__(f"PostgreSQL refused to run with administrative privileges (port {port})")
        self.port = port
        self.stderr = stderr
