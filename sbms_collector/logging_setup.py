"""
Logging configuration with console and file support
"""

import logging
import os
from logging.handlers import RotatingFileHandler

from .config import LoggingConfig


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output"""

    def format(self, record):
        if record.levelno == logging.INFO:
            self._style._fmt = "%(asctime)-15s %(message)s"
        elif record.levelno == logging.DEBUG:
            self._style._fmt = "%(asctime)-15s \033[36m%(levelname)-8s\033[0m %(name)s: %(message)s"
        else:
            color = {
                logging.WARNING: 33,
                logging.ERROR: 31,
                logging.FATAL: 31,
            }.get(record.levelno, 0)
            self._style._fmt = f"%(asctime)-15s \033[{color}m%(levelname)-8s %(name)s:%(lineno)d\033[0m: %(message)s"
        return super().format(record)


class PlainFormatter(logging.Formatter):
    """Plain formatter for file output (no colors)"""

    def format(self, record):
        if record.levelno == logging.INFO:
            self._style._fmt = "%(asctime)-15s %(message)s"
        else:
            self._style._fmt = "%(asctime)-15s %(levelname)-8s %(name)s:%(lineno)d: %(message)s"
        return super().format(record)


def setup_logging(config: LoggingConfig, max_bytes=5*1024*1024, backup_count=3):
    """
    Setup logging with optional file output

    Args:
        config: Logging section (level and optional file path)
        max_bytes: Maximum log file size before rotation (default 5MB)
        backup_count: Number of backup files to keep (default 3)

    Returns:
        Root logger instance
    """
    log = logging.getLogger()
    log.handlers.clear()

    log.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(ColoredFormatter())
    log.addHandler(console_handler)

    if config.file:
        try:
            log_dir = os.path.dirname(config.file)
            if log_dir and not os.path.exists(log_dir):
                os.makedirs(log_dir, exist_ok=True)

            file_handler = RotatingFileHandler(
                config.file,
                maxBytes=max_bytes,
                backupCount=backup_count
            )
            file_handler.setFormatter(PlainFormatter())
            log.addHandler(file_handler)
            log.info(f"File logging enabled: {config.file}")
        except OSError as e:
            log.warning(f"Could not enable file logging: {e}")

    return log
