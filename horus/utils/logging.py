"""
Structured Logging Configuration

Console + optional file logging for the pipeline. Records may carry
pipeline context (session_id, stage, attempt) via ``extra=``; those keys
are appended to the line so a single session can be grepped end to end.
"""
import logging
import os
import sys
from typing import Optional
from datetime import datetime, timezone

CONTEXT_FIELDS = ("session_id", "stage", "attempt", "revision")


class StructuredFormatter(logging.Formatter):
    """Coloured single-line formatter with pipeline context suffix."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _context_suffix(self, record: logging.LogRecord) -> str:
        parts = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        ]
        return f" ({', '.join(parts)})" if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).isoformat()

        color = self.COLORS.get(record.levelname, self.COLORS['RESET']) if self.use_color else ""
        reset = self.COLORS['RESET'] if self.use_color else ""

        log_message = (
            f"{color}[{timestamp}] "
            f"{record.levelname:8} "
            f"[{record.name}] "
            f"{record.getMessage()}"
            f"{self._context_suffix(record)}{reset}"
        )

        if record.exc_info:
            log_message += f"\n{self.formatException(record.exc_info)}"

        return log_message


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    Configure logging for the ``horus`` logger tree.

    Args:
        level: Logging level name; falls back to HORUS_LOG_LEVEL, then INFO
        log_file: Optional file path; falls back to HORUS_LOG_FILE
    """
    level = level or os.getenv("HORUS_LOG_LEVEL", "INFO")
    log_file = log_file or os.getenv("HORUS_LOG_FILE") or None

    package_logger = logging.getLogger("horus")
    package_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    package_logger.handlers.clear()
    package_logger.propagate = False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(StructuredFormatter(use_color=sys.stdout.isatty()))
    package_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter(use_color=False))
        package_logger.addHandler(file_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a module logger (pass ``__name__``)."""
    return logging.getLogger(name)


setup_logging()
