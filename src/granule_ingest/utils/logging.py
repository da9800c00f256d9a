"""
Logging configuration for granule ingest.

Console output goes through Rich when enabled; an optional file handler writes
a plain, parseable format and ``json_format`` switches the console to one JSON
object per line for log aggregation. The granule currently being ingested is
carried in a context variable and stamped onto every record.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from rich.logging import RichHandler

ROOT_LOGGER = "granule_ingest"

_granule_id: ContextVar[str | None] = ContextVar("granule_id", default=None)


def get_granule_id() -> str | None:
    """Granule id bound to the current task, if any."""
    return _granule_id.get()


@contextmanager
def granule_context(granule_id: str) -> Iterator[str]:
    """
    Bind a granule id to log records emitted in this context.

    Usage:
        with granule_context("MOD09GQ.A2016358.h13v04.006.2016360104606"):
            logger.info("Fetching")  # record.granule_id is set
    """
    token = _granule_id.set(granule_id)
    try:
        yield granule_id
    finally:
        _granule_id.reset(token)


class GranuleContextFilter(logging.Filter):
    """Attach ``granule_id`` from the context variable to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.granule_id = get_granule_id() or "-"
        return True


class FileFormatter(logging.Formatter):
    """Formatter for file logs - clean and parseable."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s [%(levelname)-8s] %(name)s [%(granule_id)s]: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        granule_id = getattr(record, "granule_id", None)
        if granule_id and granule_id != "-":
            log_data["granule_id"] = granule_id
        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(log_data, default=str)


LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str) and level.upper() in LEVEL_MAP:
        return LEVEL_MAP[level.upper()]
    # Default to INFO if invalid
    return logging.INFO


def setup_logging(
    level: str | int = logging.INFO,
    log_file: str | Path | None = None,
    file_mode: str = "a",
    console_enabled: bool = True,
    use_rich: bool = True,
    json_format: bool = False,
) -> logging.Logger:
    """
    Setup logging for the ``granule_ingest`` logger tree.

    Args:
        level: Logging level as string (DEBUG, INFO, etc.) or int (default: INFO)
        log_file: Optional file path to write logs to (default: None, console only)
        file_mode: 'a' to append, 'w' to overwrite (default: 'a')
        console_enabled: Whether to log to the console (default: True)
        use_rich: Use RichHandler for console output (default: True)
        json_format: Emit JSON lines on the console instead (overrides use_rich)

    Returns:
        Logger instance
    """
    logger = logging.getLogger(ROOT_LOGGER)
    # Only clear handlers from this logger, not root or child loggers
    logger.handlers.clear()
    logger.filters.clear()

    level_int = _parse_level(level)
    logger.setLevel(level_int)
    logger.addFilter(GranuleContextFilter())

    if console_enabled:
        handler: logging.Handler
        if json_format:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(JsonFormatter())
        elif use_rich:
            handler = RichHandler(
                level=level_int,
                show_time=True,
                show_path=False,
                markup=False,
                rich_tracebacks=True,
                log_time_format="[%X]",
            )
        else:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(logging.Formatter("%(levelname)s: %(asctime)s - %(name)s - %(message)s"))
        handler.setLevel(level_int)
        handler.addFilter(GranuleContextFilter())
        logger.addHandler(handler)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode=file_mode)
        # File captures everything the logger lets through
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(GranuleContextFilter())
        file_handler.setFormatter(FileFormatter())
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """
    Get a logger instance under the ``granule_ingest`` namespace.

    Args:
        name: Logger name (default: "granule_ingest")

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    logger.propagate = True
    return logger
