"""Structured logging shared by the host and the in-container server.

Level and format come from ``LOG_LEVEL`` / ``LOG_FORMAT`` at import time so
modules can log before Settings load. ``configure_logging`` re-applies them
from the ``[logging]`` table once settings are available.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _renderer(fmt: str) -> structlog.types.Processor:
    # Containers ship logs to the host as JSON lines
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure_logging(level_name: str, fmt: str = "console") -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format="%(message)s", stream=sys.stderr)
    root.setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            _renderer(fmt.lower()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Loggers stay uncached so a later configure_logging call takes effect
        cache_logger_on_first_use=False,
    )


def bind_role(role: str) -> None:
    """Tag every following log line in this context with ``role`` (host/agent)."""
    structlog.contextvars.bind_contextvars(role=role)


configure_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ.get("LOG_FORMAT", "console"))

logger: structlog.stdlib.BoundLogger = structlog.get_logger()
