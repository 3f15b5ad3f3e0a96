"""
Framework-agnostic helpers shared by the HTTP integrations.

- Correlation id generation and propagation
- Request-scoped log context (through ``order_log_context``)
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager

from ordersaga.core.logger import get_logger
from ordersaga.monitoring.logging import order_context, order_log_context

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


def generate_correlation_id() -> str:
    """
    Generate a new unique correlation ID.

    Returns:
        A UUID string suitable for request tracing.
    """
    return str(uuid.uuid4())


def get_correlation_id() -> str | None:
    """Correlation ID of the current request, if one is bound."""
    return order_context.get({}).get("correlation_id")


@contextmanager
def correlation_scope(correlation_id: str | None = None) -> Iterator[str]:
    """
    Bind a correlation ID (generated when missing) for the enclosed block.

    Example:
        with correlation_scope(request.headers.get(CORRELATION_HEADER)) as cid:
            ...  # every log line carries correlation_id=cid
    """
    cid = correlation_id or generate_correlation_id()
    with order_log_context(correlation_id=cid):
        yield cid
