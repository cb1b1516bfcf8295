from __future__ import annotations

import logging
import os

import structlog

_CONFIGURED = False


def configure_logging() -> None:
    """Configure structlog once per process.

    Level comes from CHECKOUT_LOG_LEVEL (DEBUG, INFO, WARNING, ERROR). Output is one JSON
    object per line so log shippers can index the bound fields.
    """

    global _CONFIGURED

    if _CONFIGURED:
        return

    level_name = os.getenv("CHECKOUT_LOG_LEVEL", "INFO").strip().upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown CHECKOUT_LOG_LEVEL={level_name!r}.")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    _CONFIGURED = True


def get_logger(component: str) -> structlog.BoundLogger:
    # Lazy proxy: configuration is resolved at first use, not at import time.
    return structlog.get_logger(component=component)
