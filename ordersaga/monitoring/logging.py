"""
Structured logging for the checkout saga

JSON log lines carrying the order being processed and the request's
correlation id, propagated through ``contextvars`` so concurrent requests
never mix their context.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Context variables for propagating order context
order_context: ContextVar[dict[str, Any]] = ContextVar("order_context", default={})

_CONTEXT_FIELDS = ("order_id", "provider_order_id", "provider", "correlation_id")


class OrderJsonFormatter(logging.Formatter):
    """
    JSON formatter for order logs with structured fields

    Ensures all saga-related logs include correlation IDs and context
    """

    # Fields to extract from log record if present
    _EXTRA_FIELDS = (
        *_CONTEXT_FIELDS,
        "payment_state",
        "shipment_state",
        "event_kind",
        "duration_ms",
        "error_type",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key, value in order_context.get({}).items():
            if value is not None:
                log_entry[key] = value

        for field in self._EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value not in (None, ""):
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class OrderContextFilter(logging.Filter):
    """
    Logging filter that adds order context to log records
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = order_context.get({})
        for field in _CONTEXT_FIELDS:
            if not hasattr(record, field):
                setattr(record, field, context.get(field, ""))
        return True


@contextmanager
def order_log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    Bind order fields to every log line emitted inside the block.

    Nested blocks inherit and extend the outer context.

    Example:
        >>> with order_log_context(order_id="ORDER_1", provider="cashfree"):
        ...     logger.info("Verifying payment")
    """
    merged = {**order_context.get({}), **{k: v for k, v in fields.items() if v is not None}}
    token = order_context.set(merged)
    try:
        yield merged
    finally:
        order_context.reset(token)


def configure_logging(level: int | str = logging.INFO, json_format: bool = False) -> None:
    """
    Configure the ``ordersaga`` logger hierarchy.

    Args:
        level: Log level for ordersaga loggers
        json_format: Emit JSON lines instead of plain text
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(OrderContextFilter())
    if json_format:
        handler.setFormatter(OrderJsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s %(name)s [%(order_id)s] %(message)s"
            )
        )

    root = logging.getLogger("ordersaga")
    for existing in list(root.handlers):
        if not isinstance(existing, logging.NullHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)
