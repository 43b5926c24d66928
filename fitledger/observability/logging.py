"""
Structured Logging with Structlog.

JSON logs carrying service context, with payment identifiers and email
addresses masked before rendering.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from fitledger.config import settings

# Values under these keys are reduced to their last four characters
MASKED_KEYS = frozenset({"payment_method_id", "confirmation_token", "recipient", "email"})

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp every entry with the service name and version."""
    event_dict["service"] = settings.service_name
    event_dict["version"] = settings.api_version
    return event_dict


def mask_value(value: str) -> str:
    if len(value) <= 4:
        return "****"
    return f"****{value[-4:]}"


def mask_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask saved payment methods, confirmation tokens and addresses."""
    for key in MASKED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and value:
            event_dict[key] = mask_value(value)
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    A settled webhook renders as:
    {
        "event": "webhook_processed",
        "level": "info",
        "timestamp": "2026-01-08T12:00:00.123456Z",
        "logger": "fitledger.services.webhook",
        "service": "fitledger-api",
        "version": "0.1.0",
        "external_payment_id": "2d9b...",
        "outcome": "processed"
    }
    """
    log_level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        mask_sensitive_fields,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=True)
    )

    structlog.configure(
        processors=[*processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger bound to a module name, e.g. `get_logger(__name__)`."""
    return structlog.get_logger(name)  # type: ignore[no-any-return]


class log_context:
    """
    Bind keys to every log entry emitted inside the block.

    Usage:
        with log_context(external_payment_id=payment.id, webhook_event=event.event):
            logger.info("webhook_received")
    """

    def __init__(self, **kwargs: Any) -> None:
        self.context = kwargs

    def __enter__(self) -> None:
        structlog.contextvars.bind_contextvars(**self.context)

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self.context.keys())
