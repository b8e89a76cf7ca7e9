"""Logging configuration with JSON format support."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

# Extra record attributes copied into JSON output when present
_EXTRA_FIELDS = ("plugin_id", "event", "state", "duration_ms", "reload_type")


class PluginContextFilter(logging.Filter):
    """Ensure every record carries a ``plugin_id`` attribute.

    Runtime modules pass ``extra={"plugin_id": ...}``; records without one
    get ``"-"`` so text formats can reference the field unconditionally.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "plugin_id"):
            record.plugin_id = "-"
        return True


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON string."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None and value != "-":
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Standard text formatter with consistent format."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(plugin_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(
    level: str = "INFO", format: str = "text", stream: Optional[TextIO] = None
) -> None:
    """Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format ('text' or 'json')
        stream: Output stream (default: stdout)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(stream or sys.stdout)
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))

    if format.lower() == "json":
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(TextFormatter())

    console_handler.addFilter(PluginContextFilter())
    root_logger.addHandler(console_handler)

    # The observer thread is chatty at DEBUG
    logging.getLogger("watchdog").setLevel(logging.WARNING)
