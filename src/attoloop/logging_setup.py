"""Logging configuration for the attoloop CLI.

Module code logs through ``logging.getLogger(__name__)``. Session lifecycle
records go through structlog, with the workspace and mode bound as context
so every record of one run can be correlated.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_STDLIB_FORMAT = "%(levelname)s %(name)s: %(message)s"

# Minimum level for chatty third-party loggers (httpx logs every request at INFO).
_LIBRARY_FLOORS = {
    "watchdog": logging.INFO,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


def setup_logging(*, debug: bool = False, json_output: bool = False, quiet: bool = False) -> int:
    """Route stdlib and structlog records to stderr; return the active level.

    stdout belongs to the console reporter and to ``--json`` output.
    """
    level = logging.DEBUG if debug else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(format=_STDLIB_FORMAT, stream=sys.stderr, level=level)
    # basicConfig is a no-op once the root logger has handlers.
    logging.getLogger("attoloop").setLevel(level)
    for name, floor in _LIBRARY_FLOORS.items():
        logging.getLogger(name).setLevel(max(level, floor))

    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )
    return level


def bind_session(**values: Any) -> None:
    """Replace the per-session context attached to structlog records."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)


def get_logger(name: str = "attoloop", **kwargs: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name, **kwargs)
