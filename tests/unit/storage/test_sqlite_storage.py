"""
SQLite-specific storage tests: durability across connections and the
end-to-end flow on a file database.
"""

import pytest

from ordersaga.core.coordinator import OrderSagaCoordinator
from ordersaga.storage.sqlite import SQLiteDatabase, create_sqlite_bundle
from ordersaga.types import DedupKey, PaymentProvider, PaymentState, ShipmentState


class TestSQLiteDurability:
    """State survives closing and reopening the database file"""

    @pytest.mark.asyncio
    async def test_reopen_file(self, tmp_path, gateway, carrier, config, retry_policy, cart, customer):
        db_path = str(tmp_path / "data" / "orders.db")

        async with create_sqlite_bundle(db_path) as storage:
            coordinator = OrderSagaCoordinator(
                {PaymentProvider.MEMORY: gateway}, carrier, storage, config, retry_policy=retry_policy
            )
            order = await coordinator.create_intent(cart, customer)
            gateway.mark_paid(order.provider_order_id)
            await coordinator.confirm_verification(order.order_id, order.provider_order_id)

        async with create_sqlite_bundle(db_path) as reopened:
            loaded = await reopened.orders.get(order.order_id)
            events = await reopened.orders.list_events(order.order_id)
            payment = await reopened.payments.get(order.provider_order_id)
            claim = await reopened.dedup.get(DedupKey(order.provider_order_id, "transition.verified"))

        assert loaded.payment_state == PaymentState.VERIFIED
        assert loaded.shipment_state == ShipmentState.BOOKED
        assert loaded.waybill == "1000000001"
        assert loaded.version == 3
        assert [e.kind for e in events] == [
            "intent.created",
            "payment.pending",
            "payment.verified",
            "shipment.booked",
        ]
        assert payment.payment_id == f"pay_{order.provider_order_id}"
        assert claim.outcome == "verified"

    @pytest.mark.asyncio
    async def test_parent_directory_is_created(self, tmp_path):
        db_path = tmp_path / "nested" / "dir" / "orders.db"
        database = SQLiteDatabase(str(db_path))

        await database.connection()
        await database.close()

        assert db_path.exists()

    @pytest.mark.asyncio
    async def test_bundle_shares_one_connection(self):
        bundle = create_sqlite_bundle()

        assert bundle.orders.database is bundle.dedup.database is bundle.payments.database

        await bundle.initialize()
        await bundle.close()
        assert bundle.orders.database._conn is None
