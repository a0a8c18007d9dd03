"""Centralized logging configuration."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict

from .config import AppConfig

# measurement runs log from several worker threads at once
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _level(name: str, default: int = logging.INFO) -> int:
    value = logging.getLevelName(str(name).upper())
    return value if isinstance(value, int) else default


def apply_logger_levels(levels: Dict[str, str], verbose: bool = False) -> None:
    """Set per-logger levels. Under ``verbose`` they are reset so everything inherits DEBUG."""

    for name, level in levels.items():
        logging.getLogger(name).setLevel(logging.NOTSET if verbose else _level(level))


def configure_logging(config: AppConfig, verbose: bool = False) -> Path:
    settings = config.logging
    log_dir = config.paths.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / settings.file_name

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose else _level(settings.level))

    file_handler = RotatingFileHandler(log_path, maxBytes=settings.max_bytes, backupCount=settings.backup_count)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    apply_logger_levels(settings.levels, verbose)
    logging.getLogger(__name__).debug("Logging to %s", log_path)
    return log_path
