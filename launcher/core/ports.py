"""Port selection: ephemeral ports for the app server, ordered fallback for the engine."""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Sequence

from launcher.core.exceptions import PortExhaustedError
from launcher.core.readiness import wait_for_tcp
from launcher.core.supervisor import ProcessHandle, ProcessRole, ProcessSupervisor

logger = logging.getLogger(__name__)


def find_free_port(host: str = "127.0.0.1") -> int:
    """Bind an OS-assigned port, release it and return the number."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def is_port_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check if a port is available for binding."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind((host, port))
            return True
    except OSError:
        return False


class AttemptVerdict(str, Enum):
    READY = "ready"
    EXITED = "exited"
    TIMEOUT = "timeout"


@dataclass
class PortAttempt:
    port: int
    verdict: AttemptVerdict
    detail: str = ""
    returncode: int | None = None


@dataclass
class PortAssignment:
    role: ProcessRole
    port: int
    bound_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    handle: ProcessHandle | None = None


StartFn = Callable[[int], Awaitable[ProcessHandle]]
FailedAttemptHook = Callable[[PortAttempt], None]


class PortAllocator:
    """Tries candidate ports strictly in order, one live process at a time."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        host: str = "127.0.0.1",
        grace_window_seconds: float = 3.0,
        tcp_max_attempts: int = 30,
        tcp_interval_ms: int = 500,
    ):
        self.supervisor = supervisor
        self.host = host
        self.grace_window_seconds = grace_window_seconds
        self.tcp_max_attempts = tcp_max_attempts
        self.tcp_interval_ms = tcp_interval_ms

    async def _exited_within_grace(self, handle: ProcessHandle) -> bool:
        try:
            await asyncio.wait_for(handle.wait(), self.grace_window_seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def race_exit_against_readiness(self, handle: ProcessHandle, port: int) -> AttemptVerdict:
        """Race an early exit of *handle* against a TCP probe of *port*.

        An exit inside the grace window always wins, even when the probe
        answered first: a foreign listener on the port answers at once while
        our process is still failing to bind. An exit check that outlives
        the grace window leaves the decision to the probe, which is itself
        bounded by its attempt budget.
        """
        exit_task = asyncio.create_task(self._exited_within_grace(handle))
        probe_task = asyncio.create_task(
            wait_for_tcp(self.host, port, self.tcp_max_attempts, self.tcp_interval_ms)
        )
        try:
            done, _ = await asyncio.wait({exit_task, probe_task}, return_when=asyncio.FIRST_COMPLETED)
            if exit_task in done and exit_task.result():
                return AttemptVerdict.EXITED

            reachable = await probe_task
            if await exit_task or handle.returncode is not None:
                return AttemptVerdict.EXITED
            return AttemptVerdict.READY if reachable else AttemptVerdict.TIMEOUT
        finally:
            for task in (exit_task, probe_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(exit_task, probe_task, return_exceptions=True)

    async def choose_port_with_fallback(
        self,
        ports: Sequence[int],
        start: StartFn,
        on_failed_attempt: FailedAttemptHook | None = None,
        role: ProcessRole = ProcessRole.ENGINE,
    ) -> PortAssignment:
        """Start the target process on each port in order until one becomes reachable.

        *start* spawns the process for a given port. After a failed attempt
        the process is cleaned up and *on_failed_attempt* is called; it may
        raise to abort the whole sequence. Exhausting the list raises
        PortExhaustedError.
        """
        attempts: list[PortAttempt] = []
        for port in ports:
            if not is_port_available(port, self.host):
                logger.info("Port %d looks busy; trying it anyway", port)

            logger.info("Starting %s on port %d...", role.value, port)
            handle = await start(port)
            verdict = await self.race_exit_against_readiness(handle, port)

            if verdict == AttemptVerdict.READY:
                logger.info("%s reachable on port %d", role.value, port)
                return PortAssignment(role=role, port=port, handle=handle)

            await self.supervisor.kill(handle)
            attempt = PortAttempt(
                port=port,
                verdict=verdict,
                detail=handle.stderr_text(),
                returncode=handle.returncode,
            )
            attempts.append(attempt)
            logger.warning(
                "%s on port %d: %s (exit code %s)%s",
                role.value, port, verdict.value, handle.returncode,
                f"\n{attempt.detail}" if attempt.detail else "",
            )
            if on_failed_attempt is not None:
                on_failed_attempt(attempt)

        raise PortExhaustedError(attempts)
