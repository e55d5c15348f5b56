"""Per-user application data locations."""

import os
import platform
from pathlib import Path


def app_data_dir(app_name: str, override: str = "") -> Path:
    """Return the per-user directory that holds config.json, pgdata and debug.log.

    Mirrors where desktop shells put their ``userData`` directory:
    ``%APPDATA%`` on Windows, ``~/Library/Application Support`` on macOS and
    ``$XDG_CONFIG_HOME`` (or ``~/.config``) everywhere else.
    """
    if override:
        return Path(override).expanduser()

    system = platform.system()
    if system == "Windows":
        base = os.environ.get("APPDATA") or str(Path.home() / "AppData" / "Roaming")
        return Path(base) / app_name
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / app_name

    base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(base) / app_name
