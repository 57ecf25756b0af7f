"""Shared utilities."""

from .logging import StageFormatter, get_log_path, get_logger, resolve_level, setup_logging

__all__ = ["StageFormatter", "setup_logging", "get_logger", "get_log_path", "resolve_level"]
