"""
Behaviour every storage backend must share.

Runs against the in-memory and SQLite bundles; PostgreSQL follows the same
contract and is exercised by the integration suite.
"""

import asyncio
from datetime import timedelta

import pytest

from ordersaga.storage.errors import ConcurrencyError, DuplicateKeyError, NotFoundError
from ordersaga.storage.memory import create_memory_bundle
from ordersaga.storage.sqlite import create_sqlite_bundle
from ordersaga.types import (
    DedupKey,
    Order,
    OrderEvent,
    PaymentProvider,
    PaymentRecord,
    PaymentState,
    ShipmentState,
    utcnow,
)


@pytest.fixture(params=["memory", "sqlite"])
async def bundle(request):
    bundle = create_memory_bundle() if request.param == "memory" else create_sqlite_bundle(":memory:")
    await bundle.initialize()
    yield bundle
    await bundle.close()


@pytest.fixture
def make_order(customer, items):
    def _make(order_id="ORDER_1", provider_order_id="cf_1", created_at=None, **changes):
        created_at = created_at or utcnow()
        return Order(
            order_id=order_id,
            amount=499900,
            currency="INR",
            payment_provider=PaymentProvider.CASHFREE,
            provider_order_id=provider_order_id,
            customer_info=customer,
            items=items,
            created_at=created_at,
            updated_at=created_at,
            **changes,
        )

    return _make


class TestOrderStorageContract:
    """Tests for OrderStorage implementations"""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, bundle, make_order):
        order = make_order()
        await bundle.orders.insert(order)

        loaded = await bundle.orders.get("ORDER_1")

        assert loaded.order_id == "ORDER_1"
        assert loaded.amount == 499900
        assert loaded.customer_info == order.customer_info
        assert loaded.items == order.items
        assert loaded.payment_state == PaymentState.CREATED
        assert await bundle.orders.get("ORDER_404") is None

    @pytest.mark.asyncio
    async def test_lookup_by_provider_order_id(self, bundle, make_order):
        await bundle.orders.insert(make_order())

        found = await bundle.orders.get_by_provider_order_id("cashfree", "cf_1")

        assert found.order_id == "ORDER_1"
        assert await bundle.orders.get_by_provider_order_id("razorpay", "cf_1") is None

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self, bundle, make_order):
        await bundle.orders.insert(make_order())

        with pytest.raises(DuplicateKeyError):
            await bundle.orders.insert(make_order())
        with pytest.raises(DuplicateKeyError):
            await bundle.orders.insert(make_order(order_id="ORDER_2"))

    @pytest.mark.asyncio
    async def test_compare_and_set(self, bundle, make_order):
        order = make_order()
        await bundle.orders.insert(order)
        pending = order.evolve(payment_state=PaymentState.PENDING, version=1)

        stored = await bundle.orders.compare_and_set(pending, expected_version=0)

        assert stored.version == 1
        assert (await bundle.orders.get("ORDER_1")).payment_state == PaymentState.PENDING

    @pytest.mark.asyncio
    async def test_stale_version_is_rejected(self, bundle, make_order):
        order = make_order()
        await bundle.orders.insert(order)
        await bundle.orders.compare_and_set(order.evolve(version=1), expected_version=0)

        with pytest.raises(ConcurrencyError) as exc_info:
            await bundle.orders.compare_and_set(
                order.evolve(payment_state=PaymentState.EXPIRED, version=1), expected_version=0
            )

        assert exc_info.value.expected_version == 0
        assert (await bundle.orders.get("ORDER_1")).payment_state == PaymentState.CREATED

    @pytest.mark.asyncio
    async def test_compare_and_set_unknown_order(self, bundle, make_order):
        with pytest.raises(NotFoundError):
            await bundle.orders.compare_and_set(make_order(version=1), expected_version=0)

    @pytest.mark.asyncio
    async def test_concurrent_compare_and_set_has_one_winner(self, bundle, make_order):
        order = make_order()
        await bundle.orders.insert(order)

        async def write(state):
            try:
                await bundle.orders.compare_and_set(order.evolve(payment_state=state, version=1), 0)
                return True
            except ConcurrencyError:
                return False

        results = await asyncio.gather(write(PaymentState.PENDING), write(PaymentState.EXPIRED))

        assert sorted(results) == [False, True]

    @pytest.mark.asyncio
    async def test_list_filters_and_orders_newest_first(self, bundle, make_order):
        now = utcnow()
        await bundle.orders.insert(make_order("ORDER_1", "cf_1", created_at=now - timedelta(minutes=2)))
        await bundle.orders.insert(make_order("ORDER_2", "cf_2", created_at=now - timedelta(minutes=1)))
        await bundle.orders.insert(
            make_order(
                "ORDER_3",
                "cf_3",
                created_at=now,
                payment_state=PaymentState.VERIFIED,
                shipment_state=ShipmentState.BOOKED,
            )
        )

        everything = await bundle.orders.list()
        verified = await bundle.orders.list(payment_state=PaymentState.VERIFIED)
        booked = await bundle.orders.list(shipment_state=ShipmentState.BOOKED)
        page = await bundle.orders.list(limit=1, offset=1)

        assert [o.order_id for o in everything] == ["ORDER_3", "ORDER_2", "ORDER_1"]
        assert [o.order_id for o in verified] == ["ORDER_3"]
        assert [o.order_id for o in booked] == ["ORDER_3"]
        assert [o.order_id for o in page] == ["ORDER_2"]

    @pytest.mark.asyncio
    async def test_list_stale(self, bundle, make_order):
        now = utcnow()
        old = now - timedelta(hours=1)
        await bundle.orders.insert(make_order("ORDER_1", "cf_1", created_at=old))
        await bundle.orders.insert(
            make_order("ORDER_2", "cf_2", created_at=old, payment_state=PaymentState.PENDING)
        )
        await bundle.orders.insert(
            make_order("ORDER_3", "cf_3", created_at=old, payment_state=PaymentState.VERIFIED)
        )
        await bundle.orders.insert(make_order("ORDER_4", "cf_4", created_at=now))

        stale = await bundle.orders.list_stale(now - timedelta(minutes=30))

        assert {o.order_id for o in stale} == {"ORDER_1", "ORDER_2"}

    @pytest.mark.asyncio
    async def test_events_keep_insertion_order(self, bundle, make_order):
        await bundle.orders.insert(make_order())
        for kind in ("intent.created", "payment.pending", "payment.verified"):
            await bundle.orders.append_event(
                OrderEvent(
                    order_id="ORDER_1",
                    kind=kind,
                    from_state=None,
                    to_state=kind.split(".")[-1],
                    source="test",
                    details={"amount": 499900},
                )
            )

        events = await bundle.orders.list_events("ORDER_1")

        assert [e.kind for e in events] == ["intent.created", "payment.pending", "payment.verified"]
        assert events[0].details == {"amount": 499900}
        assert await bundle.orders.list_events("ORDER_2") == []


class TestDedupStoreContract:
    """Tests for DedupStore implementations"""

    KEY = DedupKey("cf_1", "webhook.order.paid", "evt_1")

    @pytest.mark.asyncio
    async def test_first_claim_wins(self, bundle):
        assert await bundle.dedup.claim(self.KEY, payload={"a": 1}) is None

        existing = await bundle.dedup.claim(self.KEY)

        assert existing is not None
        assert not existing.is_completed
        assert existing.payload == {"a": 1}

    @pytest.mark.asyncio
    async def test_concurrent_claims(self, bundle):
        results = await asyncio.gather(*(bundle.dedup.claim(self.KEY) for _ in range(10)))

        assert sum(result is None for result in results) == 1

    @pytest.mark.asyncio
    async def test_complete(self, bundle):
        await bundle.dedup.claim(self.KEY)
        await bundle.dedup.complete(self.KEY, "verified")

        record = await bundle.dedup.get(self.KEY)

        assert record.is_completed
        assert record.outcome == "verified"

    @pytest.mark.asyncio
    async def test_complete_unclaimed(self, bundle):
        with pytest.raises(NotFoundError):
            await bundle.dedup.complete(self.KEY, "verified")

    @pytest.mark.asyncio
    async def test_release_allows_reclaim(self, bundle):
        await bundle.dedup.claim(self.KEY)
        await bundle.dedup.release(self.KEY)

        assert await bundle.dedup.claim(self.KEY) is None

    @pytest.mark.asyncio
    async def test_release_keeps_completed(self, bundle):
        await bundle.dedup.claim(self.KEY)
        await bundle.dedup.complete(self.KEY, "verified")
        await bundle.dedup.release(self.KEY)

        assert (await bundle.dedup.get(self.KEY)).outcome == "verified"

    @pytest.mark.asyncio
    async def test_stale_claim_is_taken_over(self, bundle):
        await bundle.dedup.claim(self.KEY)

        assert await bundle.dedup.claim(self.KEY, stale_after_seconds=60) is not None
        assert await bundle.dedup.claim(self.KEY, stale_after_seconds=0) is None

    @pytest.mark.asyncio
    async def test_completed_claim_is_never_taken_over(self, bundle):
        await bundle.dedup.claim(self.KEY)
        await bundle.dedup.complete(self.KEY, "verified")

        existing = await bundle.dedup.claim(self.KEY, stale_after_seconds=0)

        assert existing.outcome == "verified"

    @pytest.mark.asyncio
    async def test_cleanup(self, bundle):
        await bundle.dedup.claim(self.KEY)
        await bundle.dedup.claim(DedupKey("cf_2", "transition.verified"))

        assert await bundle.dedup.cleanup(utcnow() - timedelta(days=1)) == 0
        assert await bundle.dedup.cleanup(utcnow() + timedelta(seconds=1)) == 2
        assert await bundle.dedup.get(self.KEY) is None


class TestPaymentRecordStoreContract:
    """Tests for PaymentRecordStore implementations"""

    @pytest.mark.asyncio
    async def test_record_once_per_provider_order(self, bundle):
        first = PaymentRecord("ORDER_1", "cf_1", "pay_1", "sig")
        second = PaymentRecord("ORDER_1", "cf_1", "pay_2", None)

        assert await bundle.payments.record(first) is True
        assert await bundle.payments.record(second) is False

        stored = await bundle.payments.get("cf_1")
        assert stored.payment_id == "pay_1"
        assert stored.signature == "sig"

    @pytest.mark.asyncio
    async def test_list_records_newest_first(self, bundle):
        now = utcnow()
        await bundle.payments.record(PaymentRecord("ORDER_1", "cf_1", "pay_1", None, now - timedelta(minutes=1)))
        await bundle.payments.record(PaymentRecord("ORDER_2", "cf_2", "pay_2", None, now))

        records = await bundle.payments.list_records()

        assert [r.provider_order_id for r in records] == ["cf_2", "cf_1"]
        assert await bundle.payments.list_records(limit=1, offset=1) == [records[1]]
