"""Logging setup for promptloom.

Pipeline stages mirror their diagnostic entries into the standard logging
tree with a ``stage`` attribute on the record; :class:`StageFormatter` renders
it as a ``[stage]`` tag so file logs can be grepped per stage.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["StageFormatter", "setup_logging", "get_logger", "get_log_path", "resolve_level"]

LOG_DIR_ENV = "PROMPTLOOM_LOG_DIR"
LOG_LEVEL_ENV = "PROMPTLOOM_LOG_LEVEL"
LOG_FILE_NAME = "promptloom.log"

_DEFAULT_LOG_DIR = Path.home() / ".promptloom" / "logs"
# Client libraries that log every request at INFO.
_QUIET_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "markdown_it")
_LEVEL_NAMES: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

_state: dict[str, Path | None] = {"path": None}


class StageFormatter(logging.Formatter):
    """Formatter that prefixes messages with the originating pipeline stage."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(stage_tag)s%(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        stage = getattr(record, "stage", None)
        record.stage_tag = f"[{stage}] " if stage else ""
        return super().format(record)


def resolve_level(level: int | str | None, default: int = logging.INFO) -> int:
    """Map a level name (``"warn"``, ``"debug"`` ...) or number onto a logging level."""

    if level is None:
        return default
    if isinstance(level, int):
        return level
    return _LEVEL_NAMES.get(str(level).strip().lower(), default)


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (and optionally stderr) on the root logger.

    Repeated calls are no-ops unless ``force`` is set. ``level`` falls back to
    ``PROMPTLOOM_LOG_LEVEL`` and the directory to ``PROMPTLOOM_LOG_DIR``.
    Returns the path of the log file.
    """

    existing = _state["path"]
    if existing is not None and not force:
        return existing

    root_level = resolve_level(level if level is not None else os.environ.get(LOG_LEVEL_ENV))
    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    handlers = _build_handlers(log_path, console=console, max_bytes=max_bytes, backup_count=backup_count)
    for handler in handlers:
        handler.setLevel(root_level)
        handler.setFormatter(StageFormatter())
    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    quiet = max(root_level, logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet)

    _state["path"] = log_path
    return log_path


def _build_handlers(log_path: Path, *, console: bool, max_bytes: int, backup_count: int) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    return handlers


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the log file installed by :func:`setup_logging`, if any."""

    return _state["path"]
