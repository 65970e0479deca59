"""
Observability module for longmem - structured logging setup.
"""

from .logging import (
    LogLevel,
    LogRecord,
    StructuredFormatter,
    configure_logging,
)

__all__ = [
    "LogLevel",
    "LogRecord",
    "StructuredFormatter",
    "configure_logging",
]
