"""
Root logger setup for the Dewey chat backend.

Every module logs through get_logger(__name__). setup_logging() is called once
by app.main: records go to stdout and, when a path is given, to a size-rotated
file next to the service.
"""
import logging
import sys
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import List, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Per-request chatter from the HTTP clients used for Ollama and RAG calls
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3")


def _file_handler(log_file: str) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding="utf-8")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Replace any existing root configuration.

    Args:
        level: Level name; unknown names fall back to INFO
        log_file: Rotating log file path, or None for stdout only
    """
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(_file_handler(log_file))
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging at {logging.getLevelName(numeric_level)}" + (f", file {log_file}" if log_file else ""))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
