"""Structured logging for Courier.

Delivery state transitions are logged as the audit trail that sits next
to the persisted ledger, so every line about a delivery carries the same
identifying keys (see ``bind_delivery``). Pool tasks bind their worker
name once with ``bind_context``; structlog's contextvars keep it local
to that task.

Output is JSON in production and a colored console in development:

    {"event": "Delivery status changed", "from_status": "retrying",
     "to_status": "failed", "attempts": 5, "delivery_id": "dlv_...",
     "worker": "delivery-worker-3", "level": "info", "timestamp": "..."}
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from structlog.typing import Processor

    from courier.models import Delivery

# Track if logging has been configured
_configured = False


def configure_logging(
    level: str = "INFO",
    format: str = "json",
) -> None:
    """Configure structured logging for Courier.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        format: Output format - "json" for production, "text" for development.

    Example:
        ```python
        from courier.logging import configure_logging, get_logger

        configure_logging(level="DEBUG", format="text")
        logger = get_logger(__name__)
        logger.info("Delivery pool started", concurrency=10)
        ```
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)

    # Standard library logging carries structlog output, so keep its format bare
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=log_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if format.lower() == "json":
        processors: list[Processor] = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared_processors,
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name. Uses calling module name if None.

    Returns:
        A bound structlog logger.
    """
    if not _configured:
        configure_logging()

    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: object) -> None:
    """Bind context variables to all subsequent log messages.

    Context is per asyncio task, so a pool worker can tag everything it
    logs without threading the name through each call.

    Example:
        ```python
        bind_context(worker="delivery-worker-0")
        logger.info("Retry scheduled", delivery_id="dlv_abc")  # Includes worker
        ```
    """
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables.

    Tasks inherit a copy of their parent's context; call this in a
    long-lived task that must not carry anything over.
    """
    structlog.contextvars.clear_contextvars()


def unbind_context(*keys: str) -> None:
    """Remove specific keys from the logging context.

    Args:
        *keys: Keys to remove from context.
    """
    structlog.contextvars.unbind_contextvars(*keys)


def bind_delivery(
    logger: structlog.stdlib.BoundLogger,
    delivery: Delivery,
) -> structlog.stdlib.BoundLogger:
    """Return a logger carrying the identifiers of a delivery.

    Every delivery log line (claims, attempts, state transitions) carries
    the same keys so one delivery can be followed across workers.

    Example:
        ```python
        log = bind_delivery(logger, delivery)
        log.info("Delivery status changed", to_status="success")
        ```
    """
    return logger.bind(
        delivery_id=delivery.id,
        subscription_id=delivery.subscription_id,
        event_id=delivery.event_id,
        event_type=delivery.event_type.value,
        owner_id=delivery.owner_id,
    )
