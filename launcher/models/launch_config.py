"""Persisted launch configuration (config.json)."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class LaunchConfig(BaseModel):
    """Connection and secrets record written after the first successful setup.

    Serialized with camelCase keys (``localDbUrl``, ``jwtSecret``, ...) so the
    file stays readable by the application server and older installs.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    local_db_url: str = ""
    jwt_secret: str = ""
    encryption_salt: str = ""
    postgres_bin: str = ""
    postgres_data_dir: str = ""
    port: int = 5432
    start_postgres_via_task: bool = False

    @property
    def is_complete(self) -> bool:
        """A config is usable only when both the URL and the JWT secret are set."""
        return bool(self.local_db_url) and bool(self.jwt_secret)

    @property
    def has_bundled_engine(self) -> bool:
        return bool(self.postgres_bin) and bool(self.postgres_data_dir)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True)
