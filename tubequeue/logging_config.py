"""
Configures the application's logging setup.

This module sets up a root logger that directs messages to a file log and to any
extra handlers the caller supplies (the CLI passes a console handler).
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable

from .constants import LOG_DIR


def setup_logging(file_log_level_str: str = 'INFO', log_dir: Path = LOG_DIR, extra_handlers: Iterable[logging.Handler] = ()):
    """
    Configures the root logger for file logging plus any extra handlers.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on application startup.

    Args:
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        log_dir: The directory holding `latest.log` and its archives.
        extra_handlers: Handlers attached to the root logger as-is.
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    log_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'
    )

    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)

    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    for handler in extra_handlers:
        root_logger.addHandler(handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
