"""
Structured logging setup.

Every module logs through ``logging.getLogger(__name__)``; this module
formats those records as JSON or text lines and installs a handler on the
``longmem`` logger.
"""

import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, TextIO, Union


ROOT_LOGGER_NAME = "longmem"


class LogLevel(str, Enum):
    """Log levels matching Python logging."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"

    def to_python_level(self) -> int:
        """Convert to Python logging level."""
        return getattr(logging, self.value)


@dataclass
class LogRecord:
    """A structured log record."""

    timestamp: datetime = field(default_factory=datetime.now)
    level: LogLevel = LogLevel.INFO
    message: str = ""
    logger_name: str = ""
    thread_name: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        result = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "logger": self.logger_name,
        }

        if self.thread_name:
            result["thread"] = self.thread_name
        if self.attributes:
            result["attributes"] = self.attributes
        if self.exception:
            result["exception"] = self.exception

        return result

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)

    def to_text(self) -> str:
        """Convert to human-readable text."""
        parts = [
            self.timestamp.strftime("%Y-%m-%d %H:%M:%S.%f")[:-3],
            f"[{self.level.value}]",
            self.logger_name,
            "-",
            self.message,
        ]

        if self.attributes:
            attrs = " ".join(f"{k}={v}" for k, v in self.attributes.items())
            parts.append(f"[{attrs}]")

        text = " ".join(parts)

        if self.exception:
            text += f"\n{self.exception}"

        return text


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs structured log lines.

    Extra fields passed as ``extra={"attributes": {...}}`` are included.
    """

    def __init__(self, json_output: bool = True):
        super().__init__()
        self.json_output = json_output

    def format(self, record: logging.LogRecord) -> str:
        """Format log record."""
        try:
            level = LogLevel(record.levelname)
        except ValueError:
            level = LogLevel.INFO

        log_record = LogRecord(
            timestamp=datetime.fromtimestamp(record.created),
            level=level,
            message=record.getMessage(),
            logger_name=record.name,
            thread_name=record.threadName if record.threadName != "MainThread" else None,
            attributes=getattr(record, "attributes", {}),
            exception=self.formatException(record.exc_info) if record.exc_info else None,
        )

        if self.json_output:
            return log_record.to_json()
        return log_record.to_text()


def configure_logging(
    level: Union[LogLevel, str] = LogLevel.INFO,
    json_output: bool = False,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Configure the ``longmem`` logger.

    Calling it again replaces the handler installed by the previous call.

    Args:
        level: Log level
        json_output: Whether to output JSON instead of text
        stream: Output stream (defaults to stderr)

    Returns:
        The configured logger
    """
    level = LogLevel(str(level.value if isinstance(level, LogLevel) else level).upper())

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level.to_python_level())

    for handler in list(logger.handlers):
        if getattr(handler, "_longmem_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter(json_output))
    handler._longmem_handler = True
    logger.addHandler(handler)

    return logger
