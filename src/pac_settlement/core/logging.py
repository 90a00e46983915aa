"""
Structured logging setup.

Every module logs through ``structlog.get_logger()``. configure_logging() is
called once at process start (CLI and server lifespan) and routes structlog
through stdlib logging so uvicorn and library loggers share the same output.
"""

import logging
import os
import sys

import structlog

SERVICE_NAME = "pac-settlement"


def _inject_service(logger_name: str, method_name: str, event_dict: dict) -> dict:
    event_dict["service"] = SERVICE_NAME
    return event_dict


def configure_logging(level: str = None, log_format: str = None) -> None:
    """
    Configure structlog over stdlib logging.

    JSON lines by default; set LOG_FORMAT=console for human-readable output
    during local development.
    """
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    log_format = log_format or os.environ.get("LOG_FORMAT", "json")

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _inject_service,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)

    # Stripe's client logs every request at INFO
    for noisy in ("stripe", "httpx", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
