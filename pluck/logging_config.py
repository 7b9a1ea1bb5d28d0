"""
Configures the application's logging setup.

This module sets up a root logger that directs messages to a rotating file log
and, optionally, to a console handler supplied by the front end.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .constants import LOG_DIR


def rotate_latest_log(log_dir: Path) -> Path:
    """
    Renames an existing `latest.log` to a timestamped archive and returns its path.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on application startup.
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
    return latest_log_path


def setup_logging(console_handler: Optional[logging.Handler] = None,
                  file_log_level_str: str = 'INFO',
                  log_dir: Path = LOG_DIR):
    """
    Configures the root logger for file and console logging.

    Args:
        console_handler: An optional handler for interactive output (the CLI passes a RichHandler).
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        log_dir: Directory holding `latest.log` and its archives.
    """
    latest_log_path = rotate_latest_log(log_dir)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Capture all levels at the root

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

    if console_handler is not None:
        if console_handler.level == logging.NOTSET:
            console_handler.setLevel(file_log_level)
        root_logger.addHandler(console_handler)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
