from __future__ import annotations

import logging
import os
import sys

from pythonjsonlogger import jsonlogger


def configure_logging() -> logging.Logger:
    """
    Configure the service logger.
    - JSON lines on stdout (python-json-logger).
    - LOG_LEVEL env supported.
    Child loggers (querylens.executor, querylens.agents, ...) inherit the handler.
    """
    level = (os.getenv("LOG_LEVEL") or "INFO").upper()
    logger = logging.getLogger("querylens")
    logger.setLevel(level)
    logger.propagate = False

    # If handlers already exist (e.g. reloader), don't double-add
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(path)s %(method)s %(status)s %(latency_ms)s",
        )
    )
    logger.addHandler(handler)
    return logger


def sql_preview(sql: str, limit: int = 200) -> str:
    """Truncated single-line SQL for log fields."""
    s = " ".join((sql or "").split())
    return s if len(s) <= limit else s[:limit] + "..."
