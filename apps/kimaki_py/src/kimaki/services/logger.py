from __future__ import annotations

import logging
import sys

import structlog


LEVEL_MAP = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}


def create_logger(level: str):
    resolved = LEVEL_MAP.get(level.lower(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=resolved)
    # discord.py logs every gateway heartbeat at debug
    logging.getLogger("discord").setLevel(max(resolved, logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )
    return structlog.get_logger("kimaki")


def component_logger(logger, component: str):
    """Bind a component name (ipc, queue, opencode, ...) when the logger supports it."""
    bind = getattr(logger, "bind", None)
    if bind is None:
        return logger
    return bind(component=component)
