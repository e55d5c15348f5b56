"""Shared fixtures for launcher tests.

Real child processes are used wherever the behaviour under test is about
processes (spawn, exit, kill, port races). The stand-in PostgreSQL server
lives in ``fake_postgres.py`` next to this file.
"""

import socket
import sys
from pathlib import Path

import pytest

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from launcher.config import Settings
from launcher.core.engine import EngineBinaries
from launcher.core.supervisor import ProcessSupervisor

FAKE_POSTGRES = Path(__file__).resolve().parent / "fake_postgres.py"

LAUNCHER_ENV_VARS = (
    "LOCAL_DB_URL", "JWT_SECRET", "ENCRYPTION_SALT", "PORT",
    "POSTGRES_SERVICE_NAME", "POSTGRES_BIN", "POSTGRES_DATA_DIR", "POSTGRES_PORT",
    "POSTGRES_TASK_NAME", "APP_SERVER_COMMAND", "MIGRATE_COMMAND",
    "LAUNCHER_DATA_DIR", "LAUNCHER_LOG_LEVEL", "ENGINE_PORTS", "FAKE_PG_MODE",
)


@pytest.fixture(autouse=True)
def clean_launcher_env(monkeypatch):
    """Keep the developer's shell environment out of Settings()."""
    for name in LAUNCHER_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def free_ports(count: int) -> list[int]:
    """Distinct free ports, all held open until every one is chosen."""
    sockets = []
    try:
        for _ in range(count):
            s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            s.bind(("127.0.0.1", 0))
            sockets.append(s)
        return [s.getsockname()[1] for s in sockets]
    finally:
        for s in sockets:
            s.close()


@pytest.fixture
def settings_factory(tmp_path):
    """Settings pointed at tmp_path with timings short enough for tests.

    Usage:
        settings = settings_factory(engine_ports=[5432], local_db_url="...")
    """
    def _factory(**overrides) -> Settings:
        values = {
            "launcher_data_dir": str(tmp_path / "data"),
            "engine_grace_window_seconds": 1.0,
            "engine_tcp_max_attempts": 20,
            "engine_tcp_interval_ms": 100,
            "engine_settle_delay_seconds": 0,
            "app_http_max_attempts": 20,
            "app_http_interval_ms": 100,
            "app_http_timeout_ms": 500,
            "app_http_initial_delay_ms": 0,
            "shutdown_timeout_seconds": 2.0,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _factory


@pytest.fixture
async def supervisor():
    sup = ProcessSupervisor(shutdown_timeout=2.0)
    yield sup
    await sup.kill_all()


class FakeBinaries(EngineBinaries):
    """EngineBinaries that run tests/fake_postgres.py through the current interpreter."""

    def __init__(self, bin_dir: Path):
        super().__init__(bin_dir=bin_dir, initdb=FAKE_POSTGRES, postgres=FAKE_POSTGRES)

    def initdb_command(self, data_dir: Path) -> list[str]:
        return [sys.executable, str(FAKE_POSTGRES), "initdb", "-D", str(data_dir)]

    def postgres_command(self, data_dir: Path, port: int, host: str = "127.0.0.1") -> list[str]:
        return [sys.executable, str(FAKE_POSTGRES), "-D", str(data_dir), "-p", str(port), "-h", host]


@pytest.fixture
def fake_binaries(tmp_path) -> FakeBinaries:
    return FakeBinaries(tmp_path / "bin")


def python_command(code: str) -> list[str]:
    return [sys.executable, "-c", code]
