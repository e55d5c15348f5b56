"""Read and write the persisted launch configuration."""

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from launcher.db.exceptions import ConfigStoreError
from launcher.models.launch_config import LaunchConfig

logger = logging.getLogger(__name__)


def atomic_write(target: Path, content: str):
    """Write content to a file atomically via a temp file + rename.

    On POSIX, Path.replace() is atomic within the same filesystem.
    This prevents a half-written config.json if the app is killed mid-write.
    """
    tmp_path = target.with_suffix(target.suffix + ".tmp")
    tmp_path.write_text(content, encoding="utf-8")
    tmp_path.replace(target)


class ConfigStore:
    """config.json in the per-user data directory.

    Read at every start, written at most once per successful bootstrap.
    """

    def __init__(self, path: Path):
        self.path = path

    def exists(self) -> bool:
        return self.path.is_file()

    def load_raw(self) -> dict | None:
        """Return the parsed JSON object, or None when missing or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable config at %s: %s", self.path, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Ignoring config at %s: expected a JSON object", self.path)
            return None
        return data

    def load(self) -> LaunchConfig | None:
        """Return a complete config, or None.

        A config missing the connection URL or the JWT secret is treated
        exactly like a missing file so a fresh bootstrap runs.
        """
        data = self.load_raw()
        if data is None:
            return None
        try:
            config = LaunchConfig.model_validate(data)
        except ValidationError as e:
            logger.warning("Ignoring invalid config at %s: %s", self.path, e)
            return None
        if not config.is_complete:
            logger.info("Config at %s is incomplete; treating as first run", self.path)
            return None
        return config

    def save(self, config: LaunchConfig) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write(self.path, json.dumps(config.to_json_dict(), indent=2) + "\n")
        except OSError as e:
            raise ConfigStoreError(f"Could not write config to {self.path}: {e}") from e
        logger.info("Config written to %s", self.path)

    def clear(self) -> None:
        """Remove config.json (used by --reset)."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise ConfigStoreError(f"Could not remove {self.path}: {e}") from e
