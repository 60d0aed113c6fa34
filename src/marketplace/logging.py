"""Structured logging configuration.

Library modules log through ``structlog.get_logger(__name__)`` with
key/value events and never configure output themselves. Entry points
(the CLI, a hosting service) call ``setup_logging`` once.
"""

from __future__ import annotations

import logging
import sys
from typing import Any, Optional

import structlog


def setup_logging(debug: bool = False, json_output: bool = False) -> None:
    """Configure structlog for console or JSON output.

    Args:
        debug: Enable debug level logging
        json_output: Render one JSON object per line instead of the
            human-readable console format
    """
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_context(**values: Any) -> None:
    """Attach key/values (e.g. request or admin ids) to every later log line."""
    structlog.contextvars.bind_contextvars(**values)


def clear_context(keys: Optional[list[str]] = None) -> None:
    if keys:
        structlog.contextvars.unbind_contextvars(*keys)
    else:
        structlog.contextvars.clear_contextvars()
