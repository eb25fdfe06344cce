"""Structured logging configuration for replydesk.

Uses structlog for JSON-formatted logs to stdout. Supports a correlation ID
(batch_id) via contextvars so every log line of one processing batch can be
traced together, including lines emitted from worker threads.

Usage:
    from replydesk.core.logging import get_logger, set_correlation_id

    logger = get_logger(__name__)

    # In the batch processor:
    set_correlation_id(str(uuid.uuid4()))

    logger.info("email_analyzed", uid=42, category="技术问题")
"""

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

# Context variable for correlation ID (batch_id)
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context.

    Call this at the start of each batch with a new UUID. asyncio.to_thread
    copies the context, so worker threads inherit the ID.

    Args:
        correlation_id: UUID string for this batch, or None to clear
    """
    _correlation_id.set(correlation_id)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Structlog processor to add correlation ID to log entries."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["batch_id"] = correlation_id
    return event_dict


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the application.

    Safe to call more than once; the latest call wins for every logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable format
    """
    # `process` reconfigures after startup, so replace earlier handlers
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
        force=True,
    )

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        add_correlation_id,
    ]

    if json_output:
        # ensure_ascii off so CJK categories stay readable in the log stream
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(ensure_ascii=False),
        ]
    else:
        processors = shared_processors + [
            # No ANSI codes when output is piped or captured
            structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        A structlog BoundLogger instance configured for this application
    """
    return structlog.get_logger(name)


def redact_address(address: str) -> str:
    """Mask the local part of an email address for log output.

    Keeps roughly the first 30% of the local part (at least one character)
    so operators can still tell senders apart.

    Args:
        address: Email address such as 'customer@example.com'

    Returns:
        Masked address such as 'cus***@example.com'
    """
    local, sep, domain = address.partition("@")
    if not sep or not local or not domain:
        return address
    if len(local) <= 3:
        return f"{local[0]}***@{domain}"
    visible = -(-len(local) * 3 // 10)  # ceil(len * 0.3)
    return f"{local[:visible]}***@{domain}"
