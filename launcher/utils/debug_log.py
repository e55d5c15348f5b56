"""Logging setup: console output plus a durable debug.log in the app data dir.

The debug log survives crashes of the desktop shell, so setup failures that
are not shown to the user (everything except a privilege refusal) can still
be diagnosed after the fact.
"""

import logging
from pathlib import Path

DEBUG_LOG_NAME = "debug.log"

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
JSON_FORMAT = '{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}'


def configure_logging(
    level: str = "info",
    log_dir: Path | None = None,
    json_format: bool = False,
) -> Path | None:
    """Configure the root logger and return the debug log path (if any).

    Safe to call more than once; handlers installed by a previous call are
    replaced rather than duplicated.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        if getattr(handler, "_launcher_handler", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(JSON_FORMAT if json_format else PLAIN_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._launcher_handler = True  # type: ignore[attr-defined]
    root.addHandler(console)

    if log_dir is None:
        return None

    log_path = log_dir / DEBUG_LOG_NAME
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
    except OSError as e:
        root.warning("Could not open debug log at %s: %s", log_path, e)
        return None

    # The file always gets the plain format; it is read by people, not collectors.
    file_handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    file_handler._launcher_handler = True  # type: ignore[attr-defined]
    root.addHandler(file_handler)
    root.info("Debug log file: %s", log_path)
    return log_path
