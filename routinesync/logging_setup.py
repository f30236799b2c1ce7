"""Logging configuration for hosts embedding routinesync."""

import json
import logging
import traceback
from datetime import datetime

from .config import LoggingConfig

LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def resolve_level(name: str | None) -> int:
    """Map a config level name to a logging level, defaulting to INFO."""
    if not name:
        return logging.INFO
    return LEVELS.get(name.lower(), logging.INFO)


def build_handler(json_output: bool = False) -> logging.Handler:
    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    return handler


def setup_logging(level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging.

    Args:
        level: Log level name (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    logging.basicConfig(
        level=resolve_level(level),
        handlers=[build_handler(json_output)],
    )


def setup_logging_from_config(config: LoggingConfig) -> None:
    setup_logging(config.level, config.json)
