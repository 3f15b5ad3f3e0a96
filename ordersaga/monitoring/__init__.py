"""Logging and metrics for the checkout saga."""

from ordersaga.monitoring.logging import (
    OrderContextFilter,
    OrderJsonFormatter,
    configure_logging,
    order_context,
    order_log_context,
)

__all__ = [
    "OrderContextFilter",
    "OrderJsonFormatter",
    "configure_logging",
    "order_context",
    "order_log_context",
]
