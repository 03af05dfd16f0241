# src/core/logging_config.py
"""Logging configuration"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from src.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_NAME = 'triage.log'

# Third-party loggers that flood INFO with per-request lines
QUIET_LOGGERS = ("uvicorn.access", "openai", "httpx", "httpcore")


def _has_file_handler(root_logger: logging.Logger, log_file: Path) -> bool:
    target = str(log_file.resolve())
    return any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == target
        for h in root_logger.handlers
    )


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure root logging once per process.

    Console output always; a rotating file (5 MB, 5 backups) under log_dir
    unless log_dir is empty. Repeated calls add no duplicate handlers.
    """
    level = (level or settings.LOG_LEVEL).upper()
    log_dir = settings.LOG_DIR if log_dir is None else log_dir

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    if not any(type(h) is logging.StreamHandler for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_dir:
        log_file = Path(log_dir) / LOG_FILE_NAME
        log_file.parent.mkdir(parents=True, exist_ok=True)
        if not _has_file_handler(root_logger, log_file):
            file_handler = RotatingFileHandler(
                filename=str(log_file),
                maxBytes=5 * 1024 * 1024,
                backupCount=5,
                encoding='utf-8'
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root_logger
