"""Port fallback tests using the fake postgres server."""

import os
import socket

import pytest

from launcher.core.exceptions import PortExhaustedError
from launcher.core.ports import (
    AttemptVerdict,
    PortAllocator,
    find_free_port,
    is_port_available,
)
from launcher.core.supervisor import ProcessRole

from conftest import FakeBinaries, free_ports


def _allocator(supervisor, **overrides) -> PortAllocator:
    values = {"grace_window_seconds": 1.0, "tcp_max_attempts": 20, "tcp_interval_ms": 100}
    values.update(overrides)
    return PortAllocator(supervisor, **values)


def _starter(supervisor, binaries: FakeBinaries, data_dir, mode: str = "serve"):
    started = []
    env = {**os.environ, "FAKE_PG_MODE": mode}

    async def start(port: int):
        started.append(port)
        return await supervisor.spawn(
            ProcessRole.ENGINE, binaries.postgres_command(data_dir, port), env=env,
        )

    return start, started


def test_find_free_port_is_bindable():
    port = find_free_port()
    assert 0 < port < 65536
    assert is_port_available(port)


def test_is_port_available_false_when_bound():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        assert not is_port_available(s.getsockname()[1])


async def test_first_port_wins(supervisor, fake_binaries, tmp_path):
    ports = free_ports(3)
    start, started = _starter(supervisor, fake_binaries, tmp_path)

    assignment = await _allocator(supervisor).choose_port_with_fallback(ports, start)

    assert assignment.port == ports[0]
    assert assignment.role == ProcessRole.ENGINE
    assert assignment.handle is supervisor.get(ProcessRole.ENGINE)
    assert started == [ports[0]]


async def test_occupied_port_falls_through_to_next(supervisor, fake_binaries, tmp_path):
    ports = free_ports(2)
    start, started = _starter(supervisor, fake_binaries, tmp_path)
    failed = []

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        # Bound but not listening: the fake fails to bind, probes are refused.
        blocker.bind(("127.0.0.1", ports[0]))
        assignment = await _allocator(supervisor).choose_port_with_fallback(
            ports, start, on_failed_attempt=failed.append,
        )

    assert assignment.port == ports[1]
    assert started == ports
    assert len(failed) == 1
    assert failed[0].port == ports[0]
    assert failed[0].verdict == AttemptVerdict.EXITED
    assert "Address already in use" in failed[0].detail


async def test_listening_occupant_is_not_mistaken_for_our_engine(supervisor, fake_binaries, tmp_path):
    ports = free_ports(2)
    start, started = _starter(supervisor, fake_binaries, tmp_path)
    failed = []

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        # Another server accepts connections on the first port.
        blocker.bind(("127.0.0.1", ports[0]))
        blocker.listen(5)
        assignment = await _allocator(supervisor).choose_port_with_fallback(
            ports, start, on_failed_attempt=failed.append,
        )

    assert assignment.port == ports[1]
    assert assignment.handle.returncode is None
    assert started == ports
    assert [a.port for a in failed] == [ports[0]]
    assert failed[0].verdict == AttemptVerdict.EXITED
    assert "Address already in use" in failed[0].detail


async def test_every_port_failing_raises_exhausted(supervisor, fake_binaries, tmp_path):
    ports = free_ports(2)
    start, started = _starter(supervisor, fake_binaries, tmp_path, mode="crash")

    with pytest.raises(PortExhaustedError) as exc_info:
        await _allocator(supervisor).choose_port_with_fallback(ports, start)

    assert started == ports
    assert [a.port for a in exc_info.value.attempts] == ports
    assert all(a.verdict == AttemptVerdict.EXITED for a in exc_info.value.attempts)
    assert "invalid permissions" in exc_info.value.detail
    assert not supervisor.is_running(ProcessRole.ENGINE)


async def test_hook_can_abort_remaining_ports(supervisor, fake_binaries, tmp_path):
    ports = free_ports(3)
    start, started = _starter(supervisor, fake_binaries, tmp_path, mode="admin")

    class Abort(Exception):
        pass

    def abort(attempt):
        raise Abort(attempt.port)

    with pytest.raises(Abort):
        await _allocator(supervisor).choose_port_with_fallback(ports, start, on_failed_attempt=abort)
    assert started == [ports[0]]


async def test_silent_process_is_a_timeout_and_is_killed(supervisor, fake_binaries, tmp_path):
    ports = free_ports(1)
    start, _ = _starter(supervisor, fake_binaries, tmp_path, mode="hang")
    allocator = _allocator(supervisor, grace_window_seconds=0.3, tcp_max_attempts=3, tcp_interval_ms=100)

    with pytest.raises(PortExhaustedError) as exc_info:
        await allocator.choose_port_with_fallback(ports, start)

    attempt = exc_info.value.attempts[0]
    assert attempt.verdict == AttemptVerdict.TIMEOUT
    assert attempt.returncode is not None
    assert not supervisor.is_running(ProcessRole.ENGINE)


async def test_at_most_one_engine_alive_during_fallback(supervisor, fake_binaries, tmp_path):
    ports = free_ports(3)
    start, _ = _starter(supervisor, fake_binaries, tmp_path, mode="crash")
    live_at_start = []

    async def tracking_start(port):
        live_at_start.append(supervisor.is_running(ProcessRole.ENGINE))
        return await start(port)

    with pytest.raises(PortExhaustedError):
        await _allocator(supervisor).choose_port_with_fallback(ports, tracking_start)
    assert live_at_start == [False, False, False]
