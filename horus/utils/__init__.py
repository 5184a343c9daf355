"""
Utilities Package - Logging and Exception Handling
"""
from .logging import get_logger, setup_logging
from .exceptions import (
    HorusError,
    StageInputError,
    GenerativeCallError,
    ParseError,
    ValidationExhaustedError,
    CacheUnavailableError,
    EmbeddingError,
    PipelineCancelledError,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "HorusError",
    "StageInputError",
    "GenerativeCallError",
    "ParseError",
    "ValidationExhaustedError",
    "CacheUnavailableError",
    "EmbeddingError",
    "PipelineCancelledError",
]
