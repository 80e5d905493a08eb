"""Logging setup shared by the CLI and watch service."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from spoolr.config.models import LoggingSettings

DEFAULT_LOG_FORMAT = "%(message)s"
DEFAULT_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def coerce_level(level: int | str | None) -> int:
    """Translate a level name or number into a ``logging`` level."""
    if isinstance(level, int):
        return level
    normalized = str(level or "").strip().upper() or "WARNING"
    value = getattr(logging, normalized, None)
    if isinstance(value, int):
        return value
    if normalized.isdigit():
        return int(normalized)
    raise ValueError(f"Unknown log level: {level}")


def setup_logging(
    settings: LoggingSettings,
    *,
    log_file: Path | None = None,
    level_override: str | None = None,
) -> None:
    """Configure the ``spoolr`` logger hierarchy.

    Console output goes to stderr through rich so record output on stdout stays
    machine-readable. When ``log_file`` is given, a rotating file handler is
    attached using the configured size and backup count.

    Args:
        settings: Logging configuration.
        log_file: Optional path of a rotating log file.
        level_override: Level that takes precedence over ``settings.level``.
    """
    level = coerce_level(level_override or settings.level)

    handlers: list[logging.Handler] = [
        RichHandler(
            console=Console(stderr=True),
            level=level,
            markup=False,
            rich_tracebacks=False,
            show_time=True,
            show_level=True,
            show_path=False,
        )
    ]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max(1, settings.max_size_mb) * 1024 * 1024,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(DEFAULT_FILE_FORMAT, DEFAULT_DATE_FORMAT))
        file_handler.setLevel(level)
        handlers.append(file_handler)

    logging.basicConfig(
        level=logging.WARNING,
        format=DEFAULT_LOG_FORMAT,
        datefmt=DEFAULT_DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    logging.getLogger("spoolr").setLevel(level)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


__all__ = ["setup_logging", "coerce_level"]
