from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_int(name: str, fallback: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return fallback
    try:
        return int(raw)
    except ValueError:
        return fallback


def setup_app_logger(logger_name: str,
                     *,
                     log_level: str = "INFO",
                     log_file: Optional[str] = None,
                     log_max_bytes: Optional[int] = None,
                     log_backup_count: Optional[int] = None,
                     disable_console_logging: Optional[bool] = None) -> Dict[str, Any]:
    """Attach a rotating file handler to ``logger_name``.

    Environment variables win over arguments: LOG_LEVEL, LOG_FILE,
    LOG_MAX_BYTES, LOG_BACKUP_COUNT, DISABLE_CONSOLE_LOGGING ("1" disables).
    Returns the effective settings so callers can log them.
    """
    level_str = os.environ.get("LOG_LEVEL", log_level or "INFO").upper()
    level = getattr(logging, level_str, logging.INFO)
    if not isinstance(level, int):
        level = logging.INFO

    file_path = os.environ.get("LOG_FILE", log_file or f"logs/{logger_name}.log")
    log_dir = os.path.dirname(file_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    max_bytes = _env_int("LOG_MAX_BYTES", 10 * 1024 * 1024 if log_max_bytes is None else int(log_max_bytes))
    backup_count = _env_int("LOG_BACKUP_COUNT", 5 if log_backup_count is None else int(log_backup_count))

    env_disable = os.environ.get("DISABLE_CONSOLE_LOGGING")
    if env_disable is not None:
        disable_console = env_disable == "1"
    else:
        disable_console = bool(disable_console_logging)

    fmt = logging.Formatter(_FORMAT)
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)

    has_file = False
    for h in list(logger.handlers):
        if isinstance(h, RotatingFileHandler):
            has_file = True
            h.setFormatter(fmt)
        elif isinstance(h, logging.StreamHandler):
            if disable_console:
                logger.removeHandler(h)
            else:
                h.setFormatter(fmt)

    if not has_file:
        fh = RotatingFileHandler(file_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
        fh.setLevel(level)
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    logger.propagate = False

    return {
        "file": file_path,
        "level": level_str,
        "max_bytes": max_bytes,
        "backup_count": backup_count,
        "disable_console": disable_console,
    }
