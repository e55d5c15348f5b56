"""Launcher configuration."""

from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from launcher.utils.paths import app_data_dir

CONFIG_FILE_NAME = "config.json"
PG_DATA_DIR_NAME = "pgdata"


class Settings(BaseSettings):
    """Launcher settings loaded from environment variables (and an optional .env)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Zet Asociatie"

    # Per-user data directory override (config.json, pgdata, debug.log)
    launcher_data_dir: str = ""
    launcher_log_level: str = "info"
    launcher_log_json: bool = False

    # External engine mode: a superuser connection string to an existing server
    local_db_url: str = ""

    # Secrets handed to the application server; generated on first run when unset
    jwt_secret: str = ""
    encryption_salt: str = ""

    # Bundled engine
    bundled_resources_dir: str = ""
    postgres_bin: str = ""
    postgres_data_dir: str = ""
    postgres_port: int = 5432
    engine_ports: list[int] = [5432, 5433, 5434]
    engine_host: str = "127.0.0.1"

    # Engine started out of process (OS service manager or privileged scheduled task)
    postgres_service_name: str = ""
    postgres_task_name: str = "ZetAsociatiePostgres"

    # Provisioned database
    db_name: str = "zet_asociatie"
    db_app_role: str = "zet_app"

    # Readiness and grace windows
    engine_grace_window_seconds: float = 3.0
    engine_tcp_max_attempts: int = 30
    engine_tcp_interval_ms: int = 500
    engine_settle_delay_seconds: float = 1.0

    # Application server
    port: int | None = None
    app_server_command: str = ""
    app_server_cwd: str = ""
    app_health_path: str = "/login"
    app_http_max_attempts: int = 40
    app_http_interval_ms: int = 500
    app_http_timeout_ms: int = 2000
    app_http_initial_delay_ms: int = 300

    # Migrations
    migrate_command: str = ""
    migrations_dir: str = "db/migrations"
    migration_timeout_seconds: float = 300.0

    # Process supervision
    shutdown_timeout_seconds: float = 5.0
    stderr_tail_lines: int = 200

    @field_validator("engine_ports")
    @classmethod
    def _validate_engine_ports(cls, value: list[int]) -> list[int]:
        if not value:
            raise ValueError("ENGINE_PORTS must list at least one port")
        for port in value:
            if not 0 < port < 65536:
                raise ValueError(f"ENGINE_PORTS contains an invalid port: {port}")
        return value

    @property
    def data_dir(self) -> Path:
        return app_data_dir(self.app_name, self.launcher_data_dir)

    @property
    def config_path(self) -> Path:
        return self.data_dir / CONFIG_FILE_NAME

    @property
    def engine_data_dir(self) -> Path:
        if self.postgres_data_dir:
            return Path(self.postgres_data_dir).expanduser()
        return self.data_dir / PG_DATA_DIR_NAME


settings = Settings()
