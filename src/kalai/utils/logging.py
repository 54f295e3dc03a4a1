"""Logging setup for the kalai CLI and its background components.

Records go to a rotating ``kalai.log`` under ``~/.kalai/logs`` (``KALAI_LOG_DIR``
moves it). ``KALAI_DEBUG`` switches the level to DEBUG and mirrors records on
stderr; ``KALAI_LOG_LEVEL`` picks any other level by name. Each record carries a
``component`` attribute, the last segment of a ``kalai.*`` logger name, so a
coordinator line reads ``[coordinator]`` instead of the full dotted path.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Mapping

__all__ = ["ComponentFilter", "debug_requested", "resolve_level", "setup_logging", "shutdown_logging"]

DEBUG_ENV = "KALAI_DEBUG"
LEVEL_ENV = "KALAI_LOG_LEVEL"
LOG_DIR_ENV = "KALAI_LOG_DIR"
LOG_FILE_NAME = "kalai.log"

_DEFAULT_LOG_DIR = Path.home() / ".kalai" / "logs"
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_THIRD_PARTY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_FORMAT = "%(asctime)s %(levelname)-7s [%(component)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOGGER = logging.getLogger(__name__)

_handlers: list[logging.Handler] = []
_log_path: Path | None = None


class ComponentFilter(logging.Filter):
    """Attach a short ``component`` name to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.name
        if name == "kalai" or name.startswith("kalai."):
            record.component = name.rpartition(".")[2]
        else:
            record.component = name
        return True


def debug_requested(environ: Mapping[str, str] | None = None) -> bool:
    """Whether ``KALAI_DEBUG`` asks for debug logging."""

    env = os.environ if environ is None else environ
    return env.get(DEBUG_ENV, "").strip().lower() in _TRUE_VALUES


def resolve_level(debug: bool = False, environ: Mapping[str, str] | None = None) -> int:
    """Pick the root level from ``debug`` and the environment.

    ``debug`` or ``KALAI_DEBUG`` wins; otherwise a valid ``KALAI_LOG_LEVEL``
    name is used, and anything else falls back to INFO.
    """

    env = os.environ if environ is None else environ
    if debug or debug_requested(env):
        return logging.DEBUG
    name = env.get(LEVEL_ENV, "").strip().upper()
    if name:
        level = logging.getLevelName(name)
        if isinstance(level, int):
            return level
        LOGGER.warning("Ignoring unknown %s value %r", LEVEL_ENV, name)
    return logging.INFO


def setup_logging(
    debug: bool = False,
    *,
    log_dir: Path | str | None = None,
    console: bool | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the kalai handlers on the root logger and return the log file path.

    Calling it again is a no-op unless ``force`` is set, in which case the
    handlers installed earlier are replaced. Handlers that someone else put on
    the root logger are left alone. ``console`` defaults to on only at DEBUG.
    """

    global _log_path
    if _log_path is not None and not force:
        return _log_path

    level = resolve_level(debug)
    if console is None:
        console = level <= logging.DEBUG
    target_dir = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())

    shutdown_logging()
    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    root = logging.getLogger()
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(ComponentFilter())
        root.addHandler(handler)
        _handlers.append(handler)
    root.setLevel(level)
    logging.captureWarnings(True)

    # Provider SDK chatter stays at WARNING even when kalai itself is at DEBUG.
    third_party_level = max(level, logging.WARNING)
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    _log_path = log_path
    LOGGER.debug("Logging to %s at %s", log_path, logging.getLevelName(level))
    return log_path


def shutdown_logging() -> None:
    """Detach and close the handlers installed by :func:`setup_logging`."""

    global _log_path
    root = logging.getLogger()
    while _handlers:
        handler = _handlers.pop()
        root.removeHandler(handler)
        handler.close()
    _log_path = None
