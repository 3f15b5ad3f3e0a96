"""
In-memory storage implementation for orders, dedup markers and payments

Provides a simple in-memory backend for development and testing.
Not suitable for production use as state is lost on process restart.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

from ordersaga.storage.base import DedupStore, OrderStorage, PaymentRecordStore, StorageBundle
from ordersaga.storage.errors import ConcurrencyError, DuplicateKeyError, NotFoundError
from ordersaga.types import (
    DedupKey,
    DedupRecord,
    Order,
    OrderEvent,
    PaymentRecord,
    PaymentState,
    ShipmentState,
    utcnow,
)

_OPEN_STATES = (PaymentState.CREATED, PaymentState.PENDING)


class InMemoryOrderStorage(OrderStorage):
    """
    In-memory implementation of order storage

    Orders are kept as immutable snapshots; every write replaces the stored
    object, so readers never see a half-applied update.
    """

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._by_provider: dict[tuple[str, str], str] = {}
        self._events: dict[str, list[OrderEvent]] = {}
        self._lock = asyncio.Lock()

    async def insert(self, order: Order) -> None:
        provider_key = (order.payment_provider.value, order.provider_order_id)
        async with self._lock:
            if order.order_id in self._orders:
                msg = f"Order {order.order_id} already exists"
                raise DuplicateKeyError(msg, key=order.order_id)
            if provider_key in self._by_provider:
                msg = f"Provider order {order.provider_order_id} already belongs to an order"
                raise DuplicateKeyError(msg, key=order.provider_order_id)
            self._orders[order.order_id] = order
            self._by_provider[provider_key] = order.order_id

    async def get(self, order_id: str) -> Order | None:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_provider_order_id(self, provider: str, provider_order_id: str) -> Order | None:
        async with self._lock:
            order_id = self._by_provider.get((provider, provider_order_id))
            return self._orders.get(order_id) if order_id else None

    async def compare_and_set(self, order: Order, expected_version: int) -> Order:
        async with self._lock:
            current = self._orders.get(order.order_id)
            if current is None:
                msg = f"Order {order.order_id} not found"
                raise NotFoundError(msg, item_type="order", item_id=order.order_id)
            if current.version != expected_version:
                raise ConcurrencyError(
                    item_id=order.order_id,
                    expected_version=expected_version,
                    actual_version=current.version,
                )
            self._orders[order.order_id] = order
            return order

    async def list(
        self,
        payment_state: PaymentState | None = None,
        shipment_state: ShipmentState | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Order]:
        async with self._lock:
            results = [
                order
                for order in self._orders.values()
                if (payment_state is None or order.payment_state == payment_state)
                and (shipment_state is None or order.shipment_state == shipment_state)
            ]
        results.sort(key=lambda o: o.created_at, reverse=True)
        return results[offset : offset + limit]

    async def list_stale(self, created_before: datetime, limit: int = 100) -> list[Order]:
        async with self._lock:
            results = [
                order
                for order in self._orders.values()
                if order.payment_state in _OPEN_STATES and order.created_at < created_before
            ]
        results.sort(key=lambda o: o.created_at)
        return results[:limit]

    async def append_event(self, event: OrderEvent) -> None:
        async with self._lock:
            self._events.setdefault(event.order_id, []).append(event)

    async def list_events(self, order_id: str) -> list[OrderEvent]:
        async with self._lock:
            return list(self._events.get(order_id, []))


class InMemoryDedupStore(DedupStore):
    """In-memory idempotency markers"""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._records: dict[DedupKey, DedupRecord] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def claim(self, key, payload=None, stale_after_seconds=None):
        async with self._lock:
            now = self._clock()
            existing = self._records.get(key)

            if existing is not None:
                if existing.is_completed or stale_after_seconds is None:
                    return existing
                if now - existing.claimed_at < timedelta(seconds=stale_after_seconds):
                    return existing

            self._records[key] = DedupRecord(key=key, claimed_at=now, payload=payload)
            return None

    async def complete(self, key: DedupKey, outcome: str) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is None:
                msg = f"Dedup key {key} was never claimed"
                raise NotFoundError(msg, item_type="dedup", item_id=str(key))
            record.completed_at = self._clock()
            record.outcome = outcome

    async def release(self, key: DedupKey) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is not None and not record.is_completed:
                del self._records[key]

    async def get(self, key: DedupKey) -> DedupRecord | None:
        async with self._lock:
            return self._records.get(key)

    async def cleanup(self, older_than: datetime) -> int:
        async with self._lock:
            expired = [k for k, r in self._records.items() if r.claimed_at < older_than]
            for key in expired:
                del self._records[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class InMemoryPaymentRecordStore(PaymentRecordStore):
    """In-memory append-only payment log"""

    def __init__(self):
        self._records: dict[str, PaymentRecord] = {}
        self._lock = asyncio.Lock()

    async def record(self, record: PaymentRecord) -> bool:
        async with self._lock:
            if record.provider_order_id in self._records:
                return False
            self._records[record.provider_order_id] = record
            return True

    async def get(self, provider_order_id: str) -> PaymentRecord | None:
        async with self._lock:
            return self._records.get(provider_order_id)

    async def list_records(self, limit: int = 100, offset: int = 0) -> list[PaymentRecord]:
        async with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.recorded_at, reverse=True)
        return records[offset : offset + limit]


def create_memory_bundle() -> StorageBundle:
    return StorageBundle(
        orders=InMemoryOrderStorage(),
        dedup=InMemoryDedupStore(),
        payments=InMemoryPaymentRecordStore(),
    )
