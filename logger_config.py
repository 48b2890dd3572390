"""Centralized logging configuration for the Reminder Scheduling Service.

Each component logs to a rotating file under LOG_DIR and to the console.
Several modules write to the same file (job_queue, reminder_jobs and notifier
all use worker.log), so file handlers are shared per file name.
"""

import logging
from logging.handlers import RotatingFileHandler
import os
from typing import Dict, Optional

from config import settings

LOG_DIR = settings.LOG_DIR
os.makedirs(LOG_DIR, exist_ok=True)

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

NOISY_LOGGERS = ('uvicorn', 'uvicorn.access', 'fastapi', 'sqlalchemy', 'httpx', 'httpcore')

_file_handlers: Dict[str, RotatingFileHandler] = {}
_console_handler: Optional[logging.StreamHandler] = None


def _formatter() -> logging.Formatter:
    return logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)


def _file_handler(log_file: str) -> RotatingFileHandler:
    # Two handlers rotating the same file would clobber each other
    handler = _file_handlers.get(log_file)
    if handler is None:
        handler = RotatingFileHandler(
            os.path.join(LOG_DIR, log_file),
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding='utf-8'
        )
        handler.setFormatter(_formatter())
        _file_handlers[log_file] = handler
    return handler


def _stream_handler() -> logging.StreamHandler:
    global _console_handler
    if _console_handler is None:
        _console_handler = logging.StreamHandler()
        _console_handler.setFormatter(_formatter())
    return _console_handler


def setup_logger(name: str, log_file: str = 'service.log') -> logging.Logger:
    """Return the logger for a component, attaching handlers on first use.

    Args:
        name: Logger name (usually __name__)
        log_file: File under LOG_DIR (e.g., 'worker.log', 'scheduler.log')

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    logger.setLevel(settings.LOG_LEVEL.upper())
    logger.addHandler(_file_handler(log_file))
    logger.addHandler(_stream_handler())
    return logger


def configure_root_logger():
    """Reduce third-party library noise."""
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# Auto-configure on import
configure_root_logger()
