"""
Logging Configuration
=====================

Centralized logging setup for the bridge.

Usage:
    from kiro_bridge.core.logging_config import setup_logging

    # At process startup
    setup_logging(log_dir=settings.log_dir, console_level=settings.log_level)

    # In modules
    logger = logging.getLogger(__name__)
    logger.info("Message")
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

DEFAULT_LOG_FILE = "kiro-bridge.log"
DEFAULT_FILE_LOG_LEVEL = logging.DEBUG
DEFAULT_CONSOLE_LOG_LEVEL = logging.INFO
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5

CONSOLE_FORMAT = "[%(levelname)s] %(name)s: %(message)s"
DEBUG_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s (%(filename)s:%(lineno)d): %(message)s"

_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

# Track if logging has been configured
_logging_configured = False


def parse_level(level: Union[int, str, None], default: int = DEFAULT_CONSOLE_LOG_LEVEL) -> int:
    """Map "debug"/"info"/"warn"/"error" (or an int) to a logging level."""
    if level is None:
        return default
    if isinstance(level, int):
        return level
    return _LEVEL_NAMES.get(str(level).strip().lower(), default)


def setup_logging(
    log_dir: Optional[Path] = None,
    log_file: str = DEFAULT_LOG_FILE,
    console_level: Union[int, str] = DEFAULT_CONSOLE_LOG_LEVEL,
    file_level: int = DEFAULT_FILE_LOG_LEVEL,
) -> None:
    """
    Configure logging for the bridge process.

    Sets up:
    - RotatingFileHandler for detailed logs (DEBUG level) when ``log_dir`` is given
    - StreamHandler on stderr for operator output (INFO level by default)

    Calling this more than once is a no-op.
    """
    global _logging_configured

    if _logging_configured:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    log_path = None
    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / log_file
            file_handler = RotatingFileHandler(
                log_path,
                maxBytes=MAX_LOG_SIZE,
                backupCount=BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(file_level)
            file_handler.setFormatter(logging.Formatter(DEBUG_FILE_FORMAT))
            root_logger.addHandler(file_handler)
        except OSError as e:
            log_path = None
            print(f"[WARNING] File logging disabled: {e}", file=sys.stderr)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(parse_level(console_level))
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    _logging_configured = True

    logging.getLogger(__name__).debug("Logging initialized. Log file: %s", log_path)


def reset_logging() -> None:
    """Drop all handlers and allow ``setup_logging`` to run again (tests)."""
    global _logging_configured
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    _logging_configured = False
