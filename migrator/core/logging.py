"""Logging configuration for migration engine events."""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

from migrator.core.config import get_settings

# Root logger for the engine; component loggers (migrator.core.migrations.*) propagate here
app_logger = logging.getLogger("migrator")
app_logger.setLevel(logging.INFO)

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setLevel(logging.DEBUG)

formatter = logging.Formatter(
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
console_handler.setFormatter(formatter)

# Add handler to logger if not already added
if not app_logger.handlers:
    app_logger.addHandler(console_handler)


class JSONFormatter(logging.Formatter):
    """Formatter that renders one JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "logger": record.name,
            "level": record.levelname,
            "message": record.getMessage(),
        }
        extra = getattr(record, "migration", None)
        if extra:
            payload["migration"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(level: str | int | None = None, log_format: str | None = None) -> logging.Logger:
    """Attach the console handler to the engine logger and set its level.

    Args:
        level: Log level name or number (defaults to ``LOG_LEVEL`` setting).
        log_format: "human" or "json" (defaults to ``LOG_FORMAT`` setting).

    Returns:
        The configured "migrator" logger.
    """
    settings = get_settings()
    level = level if level is not None else settings.LOG_LEVEL
    if isinstance(level, str):
        name = level.upper()
        level = logging.WARNING if name == "WARN" else logging.getLevelName(name)
        if not isinstance(level, int):
            level = logging.INFO

    log_format = log_format or settings.LOG_FORMAT
    console_handler.setFormatter(JSONFormatter() if log_format == "json" else formatter)

    app_logger.setLevel(level)
    if console_handler not in app_logger.handlers:
        app_logger.addHandler(console_handler)
    return app_logger



class LevelFilterAdapter(logging.LoggerAdapter):
    """View of a logger that drops records below its own level.

    Lets each migration system honour its configured ``log_level`` without
    changing the shared "migrator" logger.
    """

    def __init__(self, logger: logging.Logger, level: int):
        super().__init__(logger, {})
        self.min_level = level

    def isEnabledFor(self, level: int) -> bool:
        return level >= self.min_level and self.logger.isEnabledFor(level)

    def process(self, msg, kwargs):
        # keep caller-supplied ``extra``
        return msg, kwargs
