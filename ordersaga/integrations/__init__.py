"""
HTTP integrations.

    from ordersaga.integrations.fastapi import create_app
"""

from ordersaga.integrations._base import (
    CORRELATION_HEADER,
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
)

__all__ = [
    "CORRELATION_HEADER",
    "correlation_scope",
    "generate_correlation_id",
    "get_correlation_id",
]
