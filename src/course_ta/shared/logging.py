"""
Logging Module - Structured logging setup with Rich console support.
====================================================================

Provides centralized logging configuration for the entire application.
Supports Rich console output for terminal logs and optional file logging.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

# Global state for logging configuration
_logging_configured = False
_console = Console(stderr=True)


def setup_logging(
    level: str = "INFO",
    use_rich: bool = True,
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    force: bool = False,
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_rich: Whether to use Rich console handler for pretty output
        log_file: Optional path to log file
        log_format: Optional custom log format string
        force: Reconfigure even if logging was already set up

    Note:
        Subsequent calls are ignored unless ``force`` is set, which keeps
        handlers from being duplicated.
    """
    global _logging_configured

    if _logging_configured and not force:
        return

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if log_format is None:
        log_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    if use_rich:
        rich_handler = RichHandler(
            console=_console,
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=False,
        )
        rich_handler.setLevel(numeric_level)
        rich_handler.setFormatter(logging.Formatter("%(message)s"))
        root_logger.addHandler(rich_handler)
    else:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setLevel(numeric_level)
        stream_handler.setFormatter(logging.Formatter(log_format))
        root_logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(logging.Formatter(log_format))
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)

    _logging_configured = True

    logger = get_logger(__name__)
    logger.debug(f"Logging configured: level={level}, rich={use_rich}, file={log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a named logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured logger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Orchestration started")
    """
    if not _logging_configured:
        setup_logging()

    return logging.getLogger(name)
