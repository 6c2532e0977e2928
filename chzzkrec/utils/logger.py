"""Logging utilities for the recorder agent.

This module configures ``structlog`` for structured logging.  The log
stream is the only user facing status channel of the agent, so records
are rendered for humans on a terminal and as JSON lines otherwise.
"""

import logging
import sys

import structlog


def configure_logging(settings) -> None:
    """Configures the logging system.

    Args:
        settings: Settings object; ``log_level`` selects the minimum level.
    """
    log_level_name = str(getattr(settings, "log_level", "INFO")).upper()
    logging.basicConfig(
        level=log_level_name,
        stream=sys.stderr,
        format="%(message)s",
    )

    if sys.stderr.isatty():
        renderers = [structlog.dev.ConsoleRenderer()]
    else:
        renderers = [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            *renderers,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(log_level_name)),
        cache_logger_on_first_use=True,
    )
