"""
Structured logging for spansend.

All spansend modules log through ``logging.getLogger(__name__)``; this
module only decides where those records go and how they look.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional, TextIO

from pydantic import BaseModel, ConfigDict, Field


_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    format: Literal["json", "text"] = Field(
        default="json", description="Log format"
    )


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs one JSON object per record with:
    - timestamp: ISO 8601 timestamp
    - level: Log level
    - logger: Logger name
    - message: Log message
    - service: Name of the exporting service
    - thread: Thread name (dispatcher workers are named)
    - extra: Additional fields passed via ``extra=``
    """

    def __init__(self, service_name: str, *args, **kwargs):
        """
        Initialize JSON formatter.

        Args:
            service_name: Name included in every record
        """
        super().__init__(*args, **kwargs)
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "thread": record.threadName,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)


def setup_logging(
    service_name: str = "spansend",
    config: Optional[LoggingConfig] = None,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Configure the ``spansend`` logger hierarchy.

    Args:
        service_name: Name included in JSON records
        config: Level and format (defaults to INFO, JSON)
        stream: Output stream (defaults to stdout)

    Returns:
        The configured ``spansend`` logger
    """
    config = config or LoggingConfig()

    logger = logging.getLogger("spansend")
    logger.setLevel(getattr(logging, config.level))

    # Remove existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)

    if config.format == "json":
        formatter: logging.Formatter = JSONFormatter(service_name=service_name)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
