"""
Logging configuration for applications embedding docgraph.

docgraph modules only create module-level loggers and pass structured
context through ``extra``. Applications call setup_logging() once to get
JSON lines (json_log_formatter) or plain text on stderr.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import Settings


class ContextJSONFormatter(json_log_formatter.JSONFormatter):
    """JSON formatter that also records level and logger name."""

    def json_record(self, message: str, extra: dict, record: logging.LogRecord) -> dict:
        extra = super().json_record(message, extra, record)
        extra["level"] = record.levelname
        extra["logger"] = record.name
        return extra


def setup_logging(settings: Settings | None = None) -> None:
    """Configure logging based on configuration.

    Args:
        settings: docgraph settings (loaded from environment when omitted)
    """
    settings = settings or Settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter: logging.Formatter = ContextJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
