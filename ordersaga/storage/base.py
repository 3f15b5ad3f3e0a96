"""
Storage interfaces for the checkout saga.

Three stores back the coordinator:

- OrderStorage: orders plus their audit trail; every update is a
  compare-and-set on ``Order.version``
- DedupStore: idempotency markers keyed by (provider_order_id, event_kind,
  delivery_id), claimed with an atomic insert-if-absent
- PaymentRecordStore: append-only record of verified payments, one per
  provider_order_id
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ordersaga.types import (
    DedupKey,
    DedupRecord,
    Order,
    OrderEvent,
    PaymentRecord,
    PaymentState,
    ShipmentState,
)


class OrderStorage(ABC):
    """Abstract base class for order persistence"""

    @abstractmethod
    async def insert(self, order: Order) -> None:
        """
        Insert a new order.

        Raises:
            DuplicateKeyError: If order_id or (provider, provider_order_id) exists
        """

    @abstractmethod
    async def get(self, order_id: str) -> Order | None:
        """Load an order by id, or None."""

    @abstractmethod
    async def get_by_provider_order_id(self, provider: str, provider_order_id: str) -> Order | None:
        """Load the order owning a provider order id, or None."""

    @abstractmethod
    async def compare_and_set(self, order: Order, expected_version: int) -> Order:
        """
        Replace the stored order if its version still equals expected_version.

        Args:
            order: New order state (its version must be expected_version + 1)
            expected_version: Version the caller read

        Returns:
            The stored order

        Raises:
            NotFoundError: If the order does not exist
            ConcurrencyError: If the stored version differs
        """

    @abstractmethod
    async def list(
        self,
        payment_state: PaymentState | None = None,
        shipment_state: ShipmentState | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Order]:
        """List orders, newest first, with optional state filters."""

    @abstractmethod
    async def list_stale(self, created_before: datetime, limit: int = 100) -> list[Order]:
        """Orders still CREATED or PENDING that were created before the cutoff."""

    @abstractmethod
    async def append_event(self, event: OrderEvent) -> None:
        """Append an audit trail entry."""

    @abstractmethod
    async def list_events(self, order_id: str) -> list[OrderEvent]:
        """Audit trail of one order, oldest first."""

    async def initialize(self) -> None:  # noqa: B027
        """Create connections and schema; no-op by default."""

    async def close(self) -> None:  # noqa: B027
        """Release connections; no-op by default."""


class DedupStore(ABC):
    """
    Abstract idempotency marker store.

    A key is claimed before its side effect runs and completed afterwards.
    An unfinished claim older than the claim timeout may be taken over,
    which recovers from a process dying between claim and complete.
    """

    @abstractmethod
    async def claim(
        self,
        key: DedupKey,
        payload: dict[str, Any] | None = None,
        stale_after_seconds: float | None = None,
    ) -> DedupRecord | None:
        """
        Atomically claim a key.

        Args:
            key: Idempotency key
            payload: Raw event kept for audit
            stale_after_seconds: Age after which an unfinished claim is reclaimable

        Returns:
            None if the claim succeeded, otherwise the existing record
        """

    @abstractmethod
    async def complete(self, key: DedupKey, outcome: str) -> None:
        """Mark a claimed key as applied with its outcome."""

    @abstractmethod
    async def release(self, key: DedupKey) -> None:
        """Drop an unfinished claim so a retry can apply the event."""

    @abstractmethod
    async def get(self, key: DedupKey) -> DedupRecord | None:
        """Look up a marker."""

    @abstractmethod
    async def cleanup(self, older_than: datetime) -> int:
        """
        Delete markers claimed before the cutoff.

        Returns:
            Number of markers deleted
        """

    async def initialize(self) -> None:  # noqa: B027
        pass

    async def close(self) -> None:  # noqa: B027
        pass


class PaymentRecordStore(ABC):
    """Append-only verified payment log"""

    @abstractmethod
    async def record(self, record: PaymentRecord) -> bool:
        """
        Insert if absent, keyed by provider_order_id.

        Returns:
            True if written, False if a record already existed
        """

    @abstractmethod
    async def get(self, provider_order_id: str) -> PaymentRecord | None:
        pass

    @abstractmethod
    async def list_records(self, limit: int = 100, offset: int = 0) -> list[PaymentRecord]:
        """Records, newest first. For audit and reconciliation only."""

    async def initialize(self) -> None:  # noqa: B027
        pass

    async def close(self) -> None:  # noqa: B027
        pass


@dataclass
class StorageBundle:
    """The three stores one coordinator needs, sharing a backend."""

    orders: OrderStorage
    dedup: DedupStore
    payments: PaymentRecordStore

    def _stores(self) -> list[Any]:
        # Stores may share one object; initialize/close each once
        seen: list[Any] = []
        for store in (self.orders, self.dedup, self.payments):
            if not any(store is s for s in seen):
                seen.append(store)
        return seen

    async def initialize(self) -> None:
        for store in self._stores():
            await store.initialize()

    async def close(self) -> None:
        for store in self._stores():
            await store.close()

    async def __aenter__(self) -> StorageBundle:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
