"""Logging configuration for StreamSub."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import List

from .utils import ensure_dir_exists

# Session work runs on a background worker, so the thread name is part of every record
DEFAULT_LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(threadName)s] [%(name)s:%(lineno)d] - %(message)s'
DEFAULT_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# HTTP calls to the completion endpoint and whisper's numba JIT log a lot at DEBUG
NOISY_LOGGERS = ("urllib3", "requests", "numba", "filelock")

def parse_log_level(name: str) -> int:
    """Maps a level name such as 'debug' to its logging constant, INFO when unknown."""
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO

def _file_handler(log_dir: str, log_file: str, max_bytes: int, backup_count: int) -> RotatingFileHandler:
    ensure_dir_exists(log_dir)
    return RotatingFileHandler(
        os.path.join(log_dir, log_file),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )

def setup_logging(
    log_level: int = logging.INFO,
    log_dir: str = "logs",
    log_file: str = "streamsub.log",
    log_format: str = DEFAULT_LOG_FORMAT,
    max_bytes: int = 10 * 1024 * 1024, # 10 MB
    backup_count: int = 5
) -> None:
    """
    Routes all records to stdout and a rotating file under ``log_dir``.

    May be called more than once (the CLI does so after reading the config
    file); handlers from the previous call are closed and replaced.

    Args:
        log_level: Minimum level for both outputs.
        log_dir: Directory for the log file, created if missing.
        log_file: File name inside log_dir.
        log_format: Record format.
        max_bytes: Size at which the file is rotated.
        backup_count: Rotated files kept.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    root.setLevel(log_level)

    formatter = logging.Formatter(log_format, datefmt=DEFAULT_DATE_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_error = None
    try:
        handlers.append(_file_handler(log_dir, log_file, max_bytes, backup_count))
    except Exception as e:
        file_error = e

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(log_level)
        root.addHandler(handler)

    if file_error is not None:
        # Console logging still works
        root.error(f"Failed to set up file logging at {log_dir}/{log_file}: {file_error}")
    else:
        root.info(f"Logging initialized. Log file: {os.path.join(log_dir, log_file)}")

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, log_level))
