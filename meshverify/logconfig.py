"""Structured logging configuration for meshverify.

Library modules log through ``structlog.get_logger(__name__)``; this module
routes those events through stdlib logging so the CLI controls the level
and destination. Output goes to stderr because stdout carries results.
"""

import logging
import sys
from typing import Any, List

import structlog
from structlog.stdlib import ProcessorFormatter


def _remove_internal_fields(logger: Any, method_name: str, event_dict: dict) -> dict:
    event_dict.pop("_record", None)
    event_dict.pop("_from_structlog", None)
    return event_dict


def configure_logging(*, json_output: bool = False, level: str = "WARNING") -> None:
    """Configure structlog and stdlib logging.

    Args:
        json_output: If True, emit JSON lines. Otherwise human-readable.
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    log_level = getattr(logging, level.upper())

    shared_processors: List[Any] = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if json_output:
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # tests reconfigure logging between CLI invocations
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=[_remove_internal_fields, renderer],
            foreign_pre_chain=shared_processors,
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)
