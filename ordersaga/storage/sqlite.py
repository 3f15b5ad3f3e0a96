"""
SQLite Storage Backend.

Provides lightweight embedded storage using SQLite with async support via aiosqlite.
Ideal for local development, single-process deployments and tests.

Usage:
    >>> from ordersaga.storage.sqlite import create_sqlite_bundle
    >>>
    >>> # File-based storage
    >>> bundle = create_sqlite_bundle("./data/orders.db")
    >>>
    >>> # In-memory storage (for testing)
    >>> bundle = create_sqlite_bundle(":memory:")
    >>> async with bundle:
    ...     await bundle.orders.insert(order)
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path

import aiosqlite

from ordersaga.storage.base import DedupStore, OrderStorage, PaymentRecordStore, StorageBundle
from ordersaga.storage.errors import (
    ConcurrencyError,
    DuplicateKeyError,
    NotFoundError,
    StorageConnectionError,
)
from ordersaga.types import (
    DedupKey,
    DedupRecord,
    Order,
    OrderEvent,
    PaymentRecord,
    PaymentState,
    ShipmentState,
    _parse_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS orders (
        order_id TEXT PRIMARY KEY,
        payment_provider TEXT NOT NULL,
        provider_order_id TEXT NOT NULL,
        payment_state TEXT NOT NULL,
        shipment_state TEXT NOT NULL,
        version INTEGER NOT NULL,
        data TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (payment_provider, provider_order_id)
    );

    CREATE INDEX IF NOT EXISTS idx_orders_payment_state ON orders(payment_state);
    CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at);

    CREATE TABLE IF NOT EXISTS order_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        from_state TEXT,
        to_state TEXT,
        source TEXT NOT NULL,
        details TEXT NOT NULL,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_order_events_order_id ON order_events(order_id);

    CREATE TABLE IF NOT EXISTS dedup_keys (
        dedup_key TEXT PRIMARY KEY,
        provider_order_id TEXT NOT NULL,
        event_kind TEXT NOT NULL,
        delivery_id TEXT NOT NULL,
        claimed_at TEXT NOT NULL,
        completed_at TEXT,
        outcome TEXT,
        payload TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_dedup_claimed_at ON dedup_keys(claimed_at);

    CREATE TABLE IF NOT EXISTS payment_records (
        provider_order_id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL,
        payment_id TEXT,
        signature TEXT,
        recorded_at TEXT NOT NULL
    );
"""


class SQLiteDatabase:
    """
    One aiosqlite connection shared by the three stores.

    Operations are serialized with a lock so a multi-statement write
    (claim, compare-and-set) is never interleaved with another.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._initialized = False
        self.lock = asyncio.Lock()

    async def connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = await aiosqlite.connect(self.db_path)
            except Exception as e:
                msg = f"Failed to open SQLite database: {e}"
                raise StorageConnectionError(msg, backend="sqlite", url=self.db_path) from e
            self._conn.row_factory = aiosqlite.Row

        if not self._initialized:
            await self._conn.executescript(SCHEMA)
            await self._conn.commit()
            self._initialized = True

        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            self._initialized = False


class _SQLiteStore:
    def __init__(self, database: SQLiteDatabase):
        self.database = database

    async def initialize(self) -> None:
        await self.database.connection()

    async def close(self) -> None:
        await self.database.close()


class SQLiteOrderStorage(_SQLiteStore, OrderStorage):
    """SQLite-based order storage"""

    async def insert(self, order: Order) -> None:
        async with self.database.lock:
            conn = await self.database.connection()
            try:
                await conn.execute(
                    """
                    INSERT INTO orders (
                        order_id, payment_provider, provider_order_id, payment_state,
                        shipment_state, version, data, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        order.order_id,
                        order.payment_provider.value,
                        order.provider_order_id,
                        order.payment_state.value,
                        order.shipment_state.value,
                        order.version,
                        json.dumps(order.to_dict()),
                        order.created_at.isoformat(),
                        order.updated_at.isoformat(),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                await conn.rollback()
                msg = f"Order {order.order_id} already exists"
                raise DuplicateKeyError(msg, key=order.order_id) from e
            await conn.commit()

    async def get(self, order_id: str) -> Order | None:
        async with self.database.lock:
            conn = await self.database.connection()
            async with conn.execute("SELECT data FROM orders WHERE order_id = ?", (order_id,)) as cursor:
                row = await cursor.fetchone()
        return Order.from_dict(json.loads(row["data"])) if row else None

    async def get_by_provider_order_id(self, provider: str, provider_order_id: str) -> Order | None:
        async with self.database.lock:
            conn = await self.database.connection()
            async with conn.execute(
                "SELECT data FROM orders WHERE payment_provider = ? AND provider_order_id = ?",
                (provider, provider_order_id),
            ) as cursor:
                row = await cursor.fetchone()
        return Order.from_dict(json.loads(row["data"])) if row else None

    async def compare_and_set(self, order: Order, expected_version: int) -> Order:
        async with self.database.lock:
            conn = await self.database.connection()
            cursor = await conn.execute(
                """
                UPDATE orders
                SET payment_state = ?, shipment_state = ?, version = ?, data = ?, updated_at = ?
                WHERE order_id = ? AND version = ?
                """,
                (
                    order.payment_state.value,
                    order.shipment_state.value,
                    order.version,
                    json.dumps(order.to_dict()),
                    order.updated_at.isoformat(),
                    order.order_id,
                    expected_version,
                ),
            )
            updated = cursor.rowcount
            await conn.commit()

            if updated == 1:
                return order

            async with conn.execute(
                "SELECT version FROM orders WHERE order_id = ?", (order.order_id,)
            ) as check:
                row = await check.fetchone()

        if row is None:
            msg = f"Order {order.order_id} not found"
            raise NotFoundError(msg, item_type="order", item_id=order.order_id)
        raise ConcurrencyError(
            item_id=order.order_id,
            expected_version=expected_version,
            actual_version=row["version"],
        )

    async def list(
        self,
        payment_state: PaymentState | None = None,
        shipment_state: ShipmentState | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Order]:
        query = "SELECT data FROM orders WHERE 1=1"
        params: list = []
        if payment_state:
            query += " AND payment_state = ?"
            params.append(payment_state.value)
        if shipment_state:
            query += " AND shipment_state = ?"
            params.append(shipment_state.value)
        query += " ORDER BY created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        async with self.database.lock:
            conn = await self.database.connection()
            async with conn.execute(query, params) as cursor:
                rows = await cursor.fetchall()
        return [Order.from_dict(json.loads(row["data"])) for row in rows]

    async def list_stale(self, created_before: datetime, limit: int = 100) -> list[Order]:
        async with self.database.lock:
            conn = await self.database.connection()
            async with conn.execute(
                """
                SELECT data FROM orders
                WHERE payment_state IN (?, ?) AND created_at < ?
                ORDER BY created_at ASC LIMIT ?
                """,
                (
                    PaymentState.CREATED.value,
                    PaymentState.PENDING.value,
                    created_before.isoformat(),
                    limit,
                ),
            ) as cursor:
                rows = await cursor.fetchall()
        return [Order.from_dict(json.loads(row["data"])) for row in rows]

    async def append_event(self, event: OrderEvent) -> None:
        async with self.database.lock:
            conn = await self.database.connection()
            await conn.execute(
                """
                INSERT INTO order_events
                    (order_id, kind, from_state, to_state, source, details, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.order_id,
                    event.kind,
                    event.from_state,
                    event.to_state,
                    event.source,
                    json.dumps(event.details, default=str),
                    event.created_at.isoformat(),
                ),
            )
            await conn.commit()

    async def list_events(self, order_id: str) -> list[OrderEvent]:
        async with self.database.lock:
            conn = await self.database.connection()
            async with conn.execute(
                "SELECT * FROM order_events WHERE order_id = ? ORDER BY id ASC", (order_id,)
            ) as cursor:
                rows = await cursor.fetchall()
        return [
            OrderEvent(
                order_id=row["order_id"],
                kind=row["kind"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                source=row["source"],
                details=json.loads(row["details"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
            for row in rows
        ]


class SQLiteDedupStore(_SQLiteStore, DedupStore):
    """SQLite-based idempotency markers"""

    async def claim(self, key, payload=None, stale_after_seconds=None):
        now = utcnow()
        async with self.database.lock:
            conn = await self.database.connection()
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO dedup_keys
                    (dedup_key, provider_order_id, event_kind, delivery_id, claimed_at, payload)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    str(key),
                    key.provider_order_id,
                    key.event_kind,
                    key.delivery_id,
                    now.isoformat(),
                    json.dumps(payload) if payload is not None else None,
                ),
            )
            inserted = cursor.rowcount
            await conn.commit()
            if inserted == 1:
                return None

            existing = await self._fetch(conn, key)
            if existing is None or existing.is_completed or stale_after_seconds is None:
                return existing
            if now - existing.claimed_at < timedelta(seconds=stale_after_seconds):
                return existing

            # Take over an abandoned claim
            cursor = await conn.execute(
                """
                UPDATE dedup_keys SET claimed_at = ?, payload = ?
                WHERE dedup_key = ? AND claimed_at = ? AND completed_at IS NULL
                """,
                (
                    now.isoformat(),
                    json.dumps(payload) if payload is not None else None,
                    str(key),
                    existing.claimed_at.isoformat(),
                ),
            )
            taken = cursor.rowcount
            await conn.commit()
            logger.warning(f"Reclaimed stale dedup claim {key}")
            return None if taken == 1 else await self._fetch(conn, key)

    async def complete(self, key: DedupKey, outcome: str) -> None:
        async with self.database.lock:
            conn = await self.database.connection()
            cursor = await conn.execute(
                "UPDATE dedup_keys SET completed_at = ?, outcome = ? WHERE dedup_key = ?",
                (utcnow().isoformat(), outcome, str(key)),
            )
            updated = cursor.rowcount
            await conn.commit()
        if updated == 0:
            msg = f"Dedup key {key} was never claimed"
            raise NotFoundError(msg, item_type="dedup", item_id=str(key))

    async def release(self, key: DedupKey) -> None:
        async with self.database.lock:
            conn = await self.database.connection()
            await conn.execute(
                "DELETE FROM dedup_keys WHERE dedup_key = ? AND completed_at IS NULL", (str(key),)
            )
            await conn.commit()

    async def get(self, key: DedupKey) -> DedupRecord | None:
        async with self.database.lock:
            conn = await self.database.connection()
            return await self._fetch(conn, key)

    async def cleanup(self, older_than: datetime) -> int:
        async with self.database.lock:
            conn = await self.database.connection()
            cursor = await conn.execute(
                "DELETE FROM dedup_keys WHERE claimed_at < ?", (older_than.isoformat(),)
            )
            deleted = cursor.rowcount
            await conn.commit()
        return deleted

    @staticmethod
    async def _fetch(conn: aiosqlite.Connection, key: DedupKey) -> DedupRecord | None:
        async with conn.execute("SELECT * FROM dedup_keys WHERE dedup_key = ?", (str(key),)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return DedupRecord(
            key=key,
            claimed_at=datetime.fromisoformat(row["claimed_at"]),
            completed_at=_parse_datetime(row["completed_at"]),
            outcome=row["outcome"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
        )


class SQLitePaymentRecordStore(_SQLiteStore, PaymentRecordStore):
    """SQLite-based payment log"""

    async def record(self, record: PaymentRecord) -> bool:
        async with self.database.lock:
            conn = await self.database.connection()
            cursor = await conn.execute(
                """
                INSERT OR IGNORE INTO payment_records
                    (provider_order_id, order_id, payment_id, signature, recorded_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    record.provider_order_id,
                    record.order_id,
                    record.payment_id,
                    record.signature,
                    record.recorded_at.isoformat(),
                ),
            )
            inserted = cursor.rowcount
            await conn.commit()
        return inserted == 1

    async def get(self, provider_order_id: str) -> PaymentRecord | None:
        async with self.database.lock:
            conn = await self.database.connection()
            async with conn.execute(
                "SELECT * FROM payment_records WHERE provider_order_id = ?", (provider_order_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return self._to_record(row) if row else None

    async def list_records(self, limit: int = 100, offset: int = 0) -> list[PaymentRecord]:
        async with self.database.lock:
            conn = await self.database.connection()
            async with conn.execute(
                "SELECT * FROM payment_records ORDER BY recorded_at DESC LIMIT ? OFFSET ?",
                (limit, offset),
            ) as cursor:
                rows = await cursor.fetchall()
        return [self._to_record(row) for row in rows]

    @staticmethod
    def _to_record(row: aiosqlite.Row) -> PaymentRecord:
        return PaymentRecord(
            order_id=row["order_id"],
            provider_order_id=row["provider_order_id"],
            payment_id=row["payment_id"],
            signature=row["signature"],
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
        )


def create_sqlite_bundle(db_path: str = ":memory:") -> StorageBundle:
    database = SQLiteDatabase(db_path)
    return StorageBundle(
        orders=SQLiteOrderStorage(database),
        dedup=SQLiteDedupStore(database),
        payments=SQLitePaymentRecordStore(database),
    )
