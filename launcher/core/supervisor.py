"""Spawn, watch and stop the launcher's child processes.

One live process per role (engine, migration, app server). Output of every
child is streamed into ``logging`` under ``launcher.process.<role>`` and the
last lines of stderr are kept on the handle for failure reports.
"""

import asyncio
import logging
import os
import platform
import signal
import time
from collections import deque
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Sequence

from launcher.core.exceptions import ProcessSpawnError

logger = logging.getLogger(__name__)

DEFAULT_TAIL_LINES = 200
DEFAULT_SHUTDOWN_TIMEOUT = 5.0


class ProcessRole(str, Enum):
    ENGINE = "engine"
    MIGRATION = "migration"
    APP_SERVER = "app_server"


ExitCallback = Callable[["ProcessHandle"], None]


def _term_signal(role: ProcessRole) -> int:
    # PostgreSQL treats SIGINT as "fast shutdown"; SIGTERM waits for clients.
    return signal.SIGINT if role == ProcessRole.ENGINE else signal.SIGTERM


class ProcessHandle:
    """A running (or finished) child process owned by the supervisor."""

    def __init__(
        self,
        role: ProcessRole,
        process: asyncio.subprocess.Process,
        command: Sequence[str],
        tail_lines: int = DEFAULT_TAIL_LINES,
    ):
        self.role = role
        self.process = process
        self.command = list(command)
        self.started_at = time.monotonic()
        self.stderr_tail: deque[str] = deque(maxlen=tail_lines)
        self.stopping = False
        self._callbacks: list[ExitCallback] = []
        self._readers: list[asyncio.Task] = []
        self._watcher: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def exited(self) -> bool:
        return self._watcher is not None and self._watcher.done()

    def stderr_text(self) -> str:
        return "\n".join(self.stderr_tail)

    def add_exit_callback(self, callback: ExitCallback) -> None:
        self._callbacks.append(callback)

    async def wait(self) -> int | None:
        """Wait for exit and for both output streams to be drained.

        Cancelling the caller does not cancel the underlying watcher.
        """
        if self._watcher is None:
            return await self.process.wait()
        return await asyncio.shield(self._watcher)

    def __repr__(self) -> str:
        return f"<ProcessHandle role={self.role.value} pid={self.pid} returncode={self.returncode}>"


class ProcessSupervisor:
    """Owns the process slots for every role.

    All state lives on the instance so tests can create as many supervisors
    as they need without process-wide side effects.
    """

    def __init__(
        self,
        tail_lines: int = DEFAULT_TAIL_LINES,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
    ):
        self.tail_lines = tail_lines
        self.shutdown_timeout = shutdown_timeout
        self._handles: dict[ProcessRole, ProcessHandle] = {}

    def get(self, role: ProcessRole) -> ProcessHandle | None:
        return self._handles.get(role)

    def is_running(self, role: ProcessRole) -> bool:
        handle = self._handles.get(role)
        return handle is not None and not handle.exited

    async def spawn(
        self,
        role: ProcessRole,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        on_exit: ExitCallback | None = None,
    ) -> ProcessHandle:
        """Start *command* for *role*, or return the live handle if one exists."""
        existing = self._handles.get(role)
        if existing is not None and not existing.exited:
            logger.debug("%s already running (pid %d); spawn is a no-op", role.value, existing.pid)
            return existing

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else None,
                start_new_session=platform.system() != "Windows",
            )
        except (OSError, ValueError) as e:
            raise ProcessSpawnError(role.value, " ".join(command), e) from e

        handle = ProcessHandle(role, process, command, self.tail_lines)
        if on_exit is not None:
            handle.add_exit_callback(on_exit)

        if process.stdout:
            handle._readers.append(asyncio.create_task(self._read_stream(handle, process.stdout, "stdout")))
        if process.stderr:
            handle._readers.append(asyncio.create_task(self._read_stream(handle, process.stderr, "stderr")))
        handle._watcher = asyncio.create_task(self._watch(handle))

        self._handles[role] = handle
        logger.info("Started %s (pid %d): %s", role.value, process.pid, " ".join(command))
        return handle

    async def run_to_completion(
        self,
        role: ProcessRole,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        timeout: float | None = None,
    ) -> ProcessHandle:
        """Spawn a one-shot process and wait for it to exit.

        On timeout the process is killed and the handle is returned with
        whatever return code the kill produced.
        """
        handle = await self.spawn(role, command, env=env, cwd=cwd)
        try:
            await asyncio.wait_for(handle.wait(), timeout)
        except asyncio.TimeoutError:
            logger.error("%s did not finish within %.0fs; killing it", role.value, timeout)
            await self.kill(handle)
        return handle

    async def kill(self, target: ProcessRole | ProcessHandle, timeout: float | None = None) -> None:
        """Terminate a process (SIGTERM, then SIGKILL after *timeout*). Idempotent."""
        timeout = self.shutdown_timeout if timeout is None else timeout
        if isinstance(target, ProcessHandle):
            handle = target
        else:
            handle = self._handles.get(target)
        if handle is None:
            return

        if self._handles.get(handle.role) is handle:
            del self._handles[handle.role]

        handle.stopping = True
        if handle.returncode is not None:
            await handle.wait()
            return

        logger.info("Stopping %s (pid %d)...", handle.role.value, handle.pid)
        self._signal(handle, _term_signal(handle.role))

        try:
            await asyncio.wait_for(handle.wait(), timeout=timeout)
            logger.info("%s stopped", handle.role.value)
        except asyncio.TimeoutError:
            logger.warning("%s did not stop in %.0fs; force killing", handle.role.value, timeout)
            self._signal(handle, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM, force=True)
            await handle.wait()

    async def kill_all(self, order: Sequence[ProcessRole] = (
        ProcessRole.APP_SERVER,
        ProcessRole.MIGRATION,
        ProcessRole.ENGINE,
    )) -> None:
        for role in order:
            await self.kill(role)

    def terminate_all_now(self) -> None:
        """Signal every live child without waiting.

        For atexit: children run in their own sessions, so nothing else
        reaches them once the launcher is gone.
        """
        for handle in list(self._handles.values()):
            if handle.returncode is not None:
                continue
            handle.stopping = True
            logger.info("Terminating %s (pid %d) on exit", handle.role.value, handle.pid)
            self._signal(handle, _term_signal(handle.role))

    def _signal(self, handle: ProcessHandle, sig: int, force: bool = False) -> None:
        """Signal the child's whole process group (POSIX) or the child itself."""
        process = handle.process
        try:
            if platform.system() != "Windows":
                os.killpg(process.pid, sig)
            elif force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            pass
        except (PermissionError, OSError):
            try:
                if force:
                    process.kill()
                else:
                    process.terminate()
            except ProcessLookupError:
                pass

    async def _read_stream(self, handle: ProcessHandle, stream: asyncio.StreamReader, stream_type: str):
        """Forward a child's output line by line into logging."""
        process_logger = logging.getLogger(f"launcher.process.{handle.role.value}")
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break
                message = line.decode("utf-8", errors="replace").rstrip()
                if not message:
                    continue
                if stream_type == "stderr":
                    handle.stderr_tail.append(message)
                process_logger.info(
                    "%s", message, extra={"role": handle.role.value, "stream": stream_type}
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Error reading %s %s: %s", handle.role.value, stream_type, e)

    async def _watch(self, handle: ProcessHandle) -> int | None:
        returncode = await handle.process.wait()
        if handle._readers:
            await asyncio.gather(*handle._readers, return_exceptions=True)

        if self._handles.get(handle.role) is handle:
            del self._handles[handle.role]

        if handle.stopping:
            logger.debug("%s exited with code %s after stop request", handle.role.value, returncode)
        elif returncode == 0:
            logger.info("%s exited with code 0", handle.role.value)
        else:
            logger.warning("%s exited with code %s", handle.role.value, returncode)

        for callback in handle._callbacks:
            try:
                callback(handle)
            except Exception:
                logger.exception("Exit callback for %s failed", handle.role.value)
        return returncode
