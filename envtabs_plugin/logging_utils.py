"""Helpers for the EnvTabs runtime log."""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "EnvTabs"
LOG_DIR_NAME = "EnvTabs"
RUNTIME_LOG_FILE_NAME = "runtime.log"
RUNTIME_LOG_MAX_BYTES = 512 * 1024
RUNTIME_LOG_BACKUPS = 3
_DISABLED_LEVEL = logging.CRITICAL + 1

_configured_level = logging.INFO


def resolve_logs_dir(base: Optional[Path] = None) -> Path:
    """Per-user log folder, created on demand."""

    if base is None:
        local = os.environ.get("LOCALAPPDATA")
        base = Path(local) if local else Path.home() / ".local" / "share"
    path = base / LOG_DIR_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def build_rotating_file_handler(
    log_dir: Path,
    file_name: str = RUNTIME_LOG_FILE_NAME,
    *,
    max_bytes: int = RUNTIME_LOG_MAX_BYTES,
    backup_count: int = RUNTIME_LOG_BACKUPS,
    formatter: Optional[logging.Formatter] = None,
) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        log_dir / file_name,
        maxBytes=max(1024, int(max_bytes)),
        backupCount=max(0, int(backup_count)),
        encoding="utf-8",
        delay=True,
    )
    if formatter is not None:
        handler.setFormatter(formatter)
    return handler


def set_base_level(level: int) -> None:
    """Record the level logging returns to when re-enabled."""

    global _configured_level
    _configured_level = level
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if logger.level != _DISABLED_LEVEL:
        logger.setLevel(level)


def set_logging_enabled(enabled: bool) -> None:
    # Child loggers inherit the parent's level, so one switch silences them all.
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    target = _configured_level if enabled else _DISABLED_LEVEL
    if logger.level != target:
        logger.setLevel(target)


def logging_enabled() -> bool:
    return logging.getLogger(ROOT_LOGGER_NAME).level != _DISABLED_LEVEL
