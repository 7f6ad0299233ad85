"""
Logging setup for remi.

Every module logs through ``logging.getLogger(__name__)``; this module wires
the root ``remi`` logger to a console handler and a rotating log file under
the XDG state directory, as configured in :mod:`remi.config`.
"""

import json
import logging
import logging.handlers
import sys
from typing import Optional

from remi.config import Settings, settings as default_settings

STANDARD_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class _ContextFilter(logging.Filter):
    def __init__(self, context: str):
        super().__init__()
        self.context = context

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = self.context
        return True


def _build_formatter(config: Settings) -> logging.Formatter:
    if config.log_format == "json":
        return JsonFormatter()
    return logging.Formatter(STANDARD_FORMAT)


def setup_logging(context: str = "cli", config: Optional[Settings] = None) -> logging.Logger:
    """
    Configure the ``remi`` logger hierarchy.

    Args:
        context: Short label for the process type (e.g., "cli"), used for the
            log file name and attached to every record
        config: Settings to use (defaults to the global settings)

    Returns:
        The configured ``remi`` logger

    Raises:
        PermissionError: If the log directory cannot be created or written
    """
    config = config or default_settings
    logger = logging.getLogger("remi")
    logger.setLevel(config.log_level.upper())

    # Re-running setup (tests, repeated CLI invocations) must not stack handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = _build_formatter(config)
    context_filter = _ContextFilter(context)

    if config.log_console_enabled:
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.WARNING)
        console.setFormatter(formatter)
        console.addFilter(context_filter)
        logger.addHandler(console)

    if config.log_file_enabled:
        log_dir = config.log_directory
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"remi-{context}.log",
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger
