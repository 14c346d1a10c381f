"""
Structured logging configuration using structlog.

All logs are output as JSON with consistent context fields
(delivery_id, webhook_id, event_type where relevant).
"""
import logging
import sys

import structlog

from app.config import settings


def configure_logging(level: str | None = None):
    """Configure structlog for JSON output at the configured level."""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


def get_logger(**context):
    """
    Get a logger with additional context bound.

    Usage:
        log = get_logger(delivery_id=delivery.id, webhook_id=webhook.id)
        log.info("attempt_recorded", status_code=200)
    """
    return structlog.get_logger(**context)
