"""
Configures the application's logging setup.

This module sets up a root logger that directs messages to both a file log
and the console, so long polling waits leave a progress trail in both.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-25s - %(message)s'


def setup_logging(file_log_level_str: str = 'INFO', log_dir: Path = LOG_DIR, console_level: int = logging.INFO) -> Path:
    """
    Configures the root logger for file and console logging.

    Implements a "Minecraft-style" log rotation where `latest.log` is renamed
    to a timestamped file on startup.

    Args:
        file_log_level_str: The minimum logging level for the file handler (e.g., 'INFO').
        log_dir: Directory that holds `latest.log` and its archives.
        console_level: The minimum logging level for the console handler.

    Returns:
        The path of the active log file.
    """
    # 1. Ensure Log Directory Exists
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    # 2. Implement Log Rotation
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        try:
            mod_time = latest_log_path.stat().st_mtime
            timestamp_str = datetime.fromtimestamp(mod_time).strftime('%Y-%m-%d_%H-%M-%S')

            archive_log_path = log_dir / f"{timestamp_str}.log"
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)

    # 3. Configure Root Logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Capture all levels at the root

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    log_formatter = logging.Formatter(LOG_FORMAT)

    # 4. Configure File Handler
    file_log_level = getattr(logging, file_log_level_str.upper(), logging.INFO)

    file_handler = logging.FileHandler(str(latest_log_path), encoding='utf-8')
    file_handler.setLevel(file_log_level)
    file_handler.setFormatter(log_formatter)
    root_logger.addHandler(file_handler)

    # 5. Configure Console Handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)-8s - %(message)s'))
    root_logger.addHandler(console_handler)

    # Third-party clients are chatty at DEBUG.
    for noisy in ('urllib3', 'asyncio'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.info("--- Logging initialized ---")
    logging.debug(f"File log level set to: {logging.getLevelName(file_log_level)}")
    return latest_log_path
