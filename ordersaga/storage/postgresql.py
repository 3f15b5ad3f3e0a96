"""
PostgreSQL storage implementation for orders, dedup markers and payments

The production backend (the storefront's Supabase database is plain
PostgreSQL). Claims and payment records rely on ``ON CONFLICT DO NOTHING``
for atomic insert-if-absent; order updates are a single conditional UPDATE
on ``version``.

Requires: pip install asyncpg
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta

import asyncpg

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
    utcnow,
)

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS orders (
    order_id VARCHAR(64) PRIMARY KEY,
    payment_provider VARCHAR(32) NOT NULL,
    provider_order_id VARCHAR(255) NOT NULL,
    payment_state VARCHAR(32) NOT NULL,
    shipment_state VARCHAR(32) NOT NULL,
    version INTEGER NOT NULL,
    data JSONB NOT NULL,
    created_at TIMESTAMP WITH TIME ZONE NOT NULL,
    updated_at TIMESTAMP WITH TIME ZONE NOT NULL,
    UNIQUE (payment_provider, provider_order_id)
);

CREATE INDEX IF NOT EXISTS idx_orders_payment_state ON orders(payment_state);
CREATE INDEX IF NOT EXISTS idx_orders_created_at ON orders(created_at);

CREATE TABLE IF NOT EXISTS order_events (
    id BIGSERIAL PRIMARY KEY,
    order_id VARCHAR(64) NOT NULL,
    kind VARCHAR(64) NOT NULL,
    from_state VARCHAR(32),
    to_state VARCHAR(32),
    source VARCHAR(64) NOT NULL,
    details JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMP WITH TIME ZONE NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_order_events_order_id ON order_events(order_id);

CREATE TABLE IF NOT EXISTS dedup_keys (
    dedup_key VARCHAR(512) PRIMARY KEY,
    provider_order_id VARCHAR(255) NOT NULL,
    event_kind VARCHAR(128) NOT NULL,
    delivery_id VARCHAR(255) NOT NULL DEFAULT '',
    claimed_at TIMESTAMP WITH TIME ZONE NOT NULL,
    completed_at TIMESTAMP WITH TIME ZONE,
    outcome VARCHAR(128),
    payload JSONB
);

CREATE INDEX IF NOT EXISTS idx_dedup_claimed_at ON dedup_keys(claimed_at);

CREATE TABLE IF NOT EXISTS payment_records (
    provider_order_id VARCHAR(255) PRIMARY KEY,
    order_id VARCHAR(64) NOT NULL,
    payment_id VARCHAR(255),
    signature TEXT,
    recorded_at TIMESTAMP WITH TIME ZONE NOT NULL
);
"""


class PostgreSQLDatabase:
    """Connection pool shared by the three PostgreSQL stores"""

    def __init__(
        self, connection_string: str, pool_min_size: int = 2, pool_max_size: int = 10, **pool_kwargs
    ):
        self.connection_string = connection_string
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.pool_kwargs = pool_kwargs
        self._pool: asyncpg.Pool | None = None
        self._lock = asyncio.Lock()

    async def pool(self) -> asyncpg.Pool:
        """Get connection pool, creating it and the schema if necessary"""
        async with self._lock:
            if self._pool is None:
                try:
                    self._pool = await asyncpg.create_pool(
                        self.connection_string,
                        min_size=self.pool_min_size,
                        max_size=self.pool_max_size,
                        **self.pool_kwargs,
                    )
                    async with self._pool.acquire() as conn:
                        await conn.execute(CREATE_TABLES_SQL)
                except (OSError, asyncpg.PostgresError) as e:
                    msg = f"Failed to connect to PostgreSQL: {e}"
                    raise StorageConnectionError(
                        msg, backend="postgresql", url=self.connection_string
                    ) from e
        return self._pool

    async def close(self) -> None:
        async with self._lock:
            if self._pool is not None:
                await self._pool.close()
                self._pool = None


class _PostgreSQLStore:
    def __init__(self, database: PostgreSQLDatabase):
        self.database = database

    async def initialize(self) -> None:
        await self.database.pool()

    async def close(self) -> None:
        await self.database.close()


def _affected(status: str) -> int:
    # asyncpg returns command tags like "UPDATE 1" / "DELETE 3"
    return int(status.split()[-1])


class PostgreSQLOrderStorage(_PostgreSQLStore, OrderStorage):
    """PostgreSQL order storage"""

    async def insert(self, order: Order) -> None:
        pool = await self.database.pool()
        try:
            await pool.execute(
                """
                INSERT INTO orders (
                    order_id, payment_provider, provider_order_id, payment_state,
                    shipment_state, version, data, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9)
                """,
                order.order_id,
                order.payment_provider.value,
                order.provider_order_id,
                order.payment_state.value,
                order.shipment_state.value,
                order.version,
                json.dumps(order.to_dict()),
                order.created_at,
                order.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            msg = f"Order {order.order_id} already exists"
            raise DuplicateKeyError(msg, key=order.order_id) from e

    async def get(self, order_id: str) -> Order | None:
        pool = await self.database.pool()
        data = await pool.fetchval("SELECT data FROM orders WHERE order_id = $1", order_id)
        return Order.from_dict(json.loads(data)) if data else None

    async def get_by_provider_order_id(self, provider: str, provider_order_id: str) -> Order | None:
        pool = await self.database.pool()
        data = await pool.fetchval(
            "SELECT data FROM orders WHERE payment_provider = $1 AND provider_order_id = $2",
            provider,
            provider_order_id,
        )
        return Order.from_dict(json.loads(data)) if data else None

    async def compare_and_set(self, order: Order, expected_version: int) -> Order:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            status = await conn.execute(
                """
                UPDATE orders
                SET payment_state = $1, shipment_state = $2, version = $3,
                    data = $4::jsonb, updated_at = $5
                WHERE order_id = $6 AND version = $7
                """,
                order.payment_state.value,
                order.shipment_state.value,
                order.version,
                json.dumps(order.to_dict()),
                order.updated_at,
                order.order_id,
                expected_version,
            )
            if _affected(status) == 1:
                return order

            actual = await conn.fetchval(
                "SELECT version FROM orders WHERE order_id = $1", order.order_id
            )

        if actual is None:
            msg = f"Order {order.order_id} not found"
            raise NotFoundError(msg, item_type="order", item_id=order.order_id)
        raise ConcurrencyError(
            item_id=order.order_id, expected_version=expected_version, actual_version=actual
        )

    async def list(
        self,
        payment_state: PaymentState | None = None,
        shipment_state: ShipmentState | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Order]:
        conditions = []
        params: list = []
        if payment_state:
            params.append(payment_state.value)
            conditions.append(f"payment_state = ${len(params)}")
        if shipment_state:
            params.append(shipment_state.value)
            conditions.append(f"shipment_state = ${len(params)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.extend([limit, offset])
        query = (
            f"SELECT data FROM orders {where} ORDER BY created_at DESC "
            f"LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        )

        pool = await self.database.pool()
        rows = await pool.fetch(query, *params)
        return [Order.from_dict(json.loads(row["data"])) for row in rows]

    async def list_stale(self, created_before: datetime, limit: int = 100) -> list[Order]:
        pool = await self.database.pool()
        rows = await pool.fetch(
            """
            SELECT data FROM orders
            WHERE payment_state = ANY($1::text[]) AND created_at < $2
            ORDER BY created_at ASC LIMIT $3
            """,
            [PaymentState.CREATED.value, PaymentState.PENDING.value],
            created_before,
            limit,
        )
        return [Order.from_dict(json.loads(row["data"])) for row in rows]

    async def append_event(self, event: OrderEvent) -> None:
        pool = await self.database.pool()
        await pool.execute(
            """
            INSERT INTO order_events
                (order_id, kind, from_state, to_state, source, details, created_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7)
            """,
            event.order_id,
            event.kind,
            event.from_state,
            event.to_state,
            event.source,
            json.dumps(event.details, default=str),
            event.created_at,
        )

    async def list_events(self, order_id: str) -> list[OrderEvent]:
        pool = await self.database.pool()
        rows = await pool.fetch(
            "SELECT * FROM order_events WHERE order_id = $1 ORDER BY id ASC", order_id
        )
        return [
            OrderEvent(
                order_id=row["order_id"],
                kind=row["kind"],
                from_state=row["from_state"],
                to_state=row["to_state"],
                source=row["source"],
                details=json.loads(row["details"]) if row["details"] else {},
                created_at=row["created_at"],
            )
            for row in rows
        ]


class PostgreSQLDedupStore(_PostgreSQLStore, DedupStore):
    """PostgreSQL idempotency markers"""

    async def claim(self, key, payload=None, stale_after_seconds=None):
        pool = await self.database.pool()
        now = utcnow()
        payload_json = json.dumps(payload) if payload is not None else None

        async with pool.acquire() as conn:
            inserted = await conn.fetchval(
                """
                INSERT INTO dedup_keys
                    (dedup_key, provider_order_id, event_kind, delivery_id, claimed_at, payload)
                VALUES ($1, $2, $3, $4, $5, $6::jsonb)
                ON CONFLICT (dedup_key) DO NOTHING
                RETURNING dedup_key
                """,
                str(key),
                key.provider_order_id,
                key.event_kind,
                key.delivery_id,
                now,
                payload_json,
            )
            if inserted is not None:
                return None

            if stale_after_seconds is not None:
                taken = await conn.fetchval(
                    """
                    UPDATE dedup_keys SET claimed_at = $2, payload = $3::jsonb
                    WHERE dedup_key = $1 AND completed_at IS NULL AND claimed_at < $4
                    RETURNING dedup_key
                    """,
                    str(key),
                    now,
                    payload_json,
                    now - timedelta(seconds=stale_after_seconds),
                )
                if taken is not None:
                    return None

            return await self._fetch(conn, key)

    async def complete(self, key: DedupKey, outcome: str) -> None:
        pool = await self.database.pool()
        status = await pool.execute(
            "UPDATE dedup_keys SET completed_at = $2, outcome = $3 WHERE dedup_key = $1",
            str(key),
            utcnow(),
            outcome,
        )
        if _affected(status) == 0:
            msg = f"Dedup key {key} was never claimed"
            raise NotFoundError(msg, item_type="dedup", item_id=str(key))

    async def release(self, key: DedupKey) -> None:
        pool = await self.database.pool()
        await pool.execute(
            "DELETE FROM dedup_keys WHERE dedup_key = $1 AND completed_at IS NULL", str(key)
        )

    async def get(self, key: DedupKey) -> DedupRecord | None:
        pool = await self.database.pool()
        async with pool.acquire() as conn:
            return await self._fetch(conn, key)

    async def cleanup(self, older_than: datetime) -> int:
        pool = await self.database.pool()
        status = await pool.execute("DELETE FROM dedup_keys WHERE claimed_at < $1", older_than)
        return _affected(status)

    @staticmethod
    async def _fetch(conn, key: DedupKey) -> DedupRecord | None:
        row = await conn.fetchrow("SELECT * FROM dedup_keys WHERE dedup_key = $1", str(key))
        if row is None:
            return None
        return DedupRecord(
            key=key,
            claimed_at=row["claimed_at"],
            completed_at=row["completed_at"],
            outcome=row["outcome"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
        )


class PostgreSQLPaymentRecordStore(_PostgreSQLStore, PaymentRecordStore):
    """PostgreSQL payment log"""

    async def record(self, record: PaymentRecord) -> bool:
        pool = await self.database.pool()
        inserted = await pool.fetchval(
            """
            INSERT INTO payment_records
                (provider_order_id, order_id, payment_id, signature, recorded_at)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (provider_order_id) DO NOTHING
            RETURNING provider_order_id
            """,
            record.provider_order_id,
            record.order_id,
            record.payment_id,
            record.signature,
            record.recorded_at,
        )
        return inserted is not None

    async def get(self, provider_order_id: str) -> PaymentRecord | None:
        pool = await self.database.pool()
        row = await pool.fetchrow(
            "SELECT * FROM payment_records WHERE provider_order_id = $1", provider_order_id
        )
        return PaymentRecord(**dict(row)) if row else None

    async def list_records(self, limit: int = 100, offset: int = 0) -> list[PaymentRecord]:
        pool = await self.database.pool()
        rows = await pool.fetch(
            "SELECT * FROM payment_records ORDER BY recorded_at DESC LIMIT $1 OFFSET $2",
            limit,
            offset,
        )
        return [PaymentRecord(**dict(row)) for row in rows]


def create_postgresql_bundle(connection_string: str, **pool_kwargs) -> StorageBundle:
    database = PostgreSQLDatabase(connection_string, **pool_kwargs)
    return StorageBundle(
        orders=PostgreSQLOrderStorage(database),
        dedup=PostgreSQLDedupStore(database),
        payments=PostgreSQLPaymentRecordStore(database),
    )
