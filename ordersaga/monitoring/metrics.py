# ============================================
# FILE: ordersaga/monitoring/metrics.py
# ============================================

"""
Prometheus metrics for the checkout saga.

Exposes:
    - ordersaga_transitions_total: state transitions by kind/from/to
    - ordersaga_webhook_events_total: webhook deliveries by provider and outcome
    - ordersaga_duplicates_total: dedup hits by event kind
    - ordersaga_provider_call_duration_seconds: latency of SaaS calls
    - ordersaga_shipment_bookings_total: carrier booking attempts by outcome

Quick Start:
    >>> from ordersaga.monitoring.metrics import start_metrics_server
    >>> start_metrics_server(port=9100)

Requirements:
    pip install prometheus-client
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from prometheus_client import Counter, Histogram, start_http_server

logger = logging.getLogger(__name__)

TRANSITIONS = Counter(
    "ordersaga_transitions_total",
    "Order state transitions",
    ["kind", "from_state", "to_state"],
)
WEBHOOK_EVENTS = Counter(
    "ordersaga_webhook_events_total",
    "Webhook deliveries",
    ["provider", "outcome"],
)
DUPLICATES = Counter(
    "ordersaga_duplicates_total",
    "Events skipped because they were already applied",
    ["event_kind"],
)
PROVIDER_CALL_DURATION = Histogram(
    "ordersaga_provider_call_duration_seconds",
    "Latency of payment gateway and carrier calls",
    ["service", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)
SHIPMENT_BOOKINGS = Counter(
    "ordersaga_shipment_bookings_total",
    "Carrier booking attempts",
    ["outcome"],
)


def record_transition(kind: str, from_state: Any, to_state: Any) -> None:
    TRANSITIONS.labels(
        kind=kind,
        from_state=getattr(from_state, "value", str(from_state)),
        to_state=getattr(to_state, "value", str(to_state)),
    ).inc()


def record_webhook(provider: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(provider=provider, outcome=outcome).inc()


def record_duplicate(event_kind: str) -> None:
    DUPLICATES.labels(event_kind=event_kind).inc()


def record_booking(outcome: str) -> None:
    SHIPMENT_BOOKINGS.labels(outcome=outcome).inc()


@contextmanager
def track_provider_call(service: str, operation: str) -> Iterator[None]:
    """Observe the duration of one external call, successful or not."""
    start = time.perf_counter()
    try:
        yield
    finally:
        PROVIDER_CALL_DURATION.labels(service=service, operation=operation).observe(
            time.perf_counter() - start
        )


def start_metrics_server(port: int = 9100, addr: str = "0.0.0.0") -> None:  # noqa: S104
    """Start the Prometheus HTTP endpoint in a background thread."""
    start_http_server(port, addr=addr)
    logger.info(f"Prometheus metrics server started on {addr}:{port}")
