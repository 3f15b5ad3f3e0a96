"""
Tests for webhook ingestion through the coordinator and for races between
webhooks and client verification.
"""

import asyncio
import json
import logging

import pytest

from ordersaga.core.exceptions import InvalidRequest, InvalidSignature
from ordersaga.providers.base import hmac_sha256
from ordersaga.types import PaymentState, ProviderStatus, ShipmentState


def _signed(body: dict, secret: str = "memory-secret") -> tuple[bytes, dict[str, str]]:
    raw = json.dumps(body).encode()
    return raw, {"x-memory-signature": hmac_sha256(secret, raw).hex()}


class TestWebhookIngestion:
    """Tests for ingest_webhook."""

    @pytest.mark.asyncio
    async def test_paid_webhook_verifies_and_books(self, coordinator, gateway, carrier, cart, customer):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id, event_id="evt_1")

        ack = await coordinator.ingest_webhook("memory", body, headers)

        assert ack.accepted
        assert not ack.duplicate
        assert ack.order_id == order.order_id
        assert ack.payment_state == PaymentState.VERIFIED
        assert not ack.shipment_pending

        stored = await coordinator.get_order(order.order_id)
        assert stored.shipment_state == ShipmentState.BOOKED
        assert carrier.booking_calls == 1

    @pytest.mark.asyncio
    async def test_deferred_booking_is_reported(self, coordinator, gateway, carrier, cart, customer):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id, event_id="evt_1")

        ack = await coordinator.ingest_webhook("memory", body, headers, book_inline=False)

        assert ack.shipment_pending
        assert carrier.booking_calls == 0

        booked = await coordinator.book_shipment(order.order_id)
        assert booked.shipment_state == ShipmentState.BOOKED

    @pytest.mark.asyncio
    async def test_replayed_webhook_applies_once(self, coordinator, gateway, carrier, cart, customer):
        """N deliveries of the same event: one applied, N-1 duplicates."""
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id, event_id="evt_1")

        acks = [await coordinator.ingest_webhook("memory", body, headers) for _ in range(5)]

        assert [ack.duplicate for ack in acks] == [False, True, True, True, True]
        assert all(ack.accepted for ack in acks)
        assert carrier.booking_calls == 1
        history = await coordinator.order_history(order.order_id)
        assert [event.kind for event in history].count("payment.verified") == 1

    @pytest.mark.asyncio
    async def test_redelivery_under_new_event_id_is_a_noop(
        self, coordinator, gateway, carrier, cart, customer
    ):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        first_body, first_headers = gateway.build_webhook(order.provider_order_id, event_id="evt_1")
        second_body, second_headers = gateway.build_webhook(order.provider_order_id, event_id="evt_2")

        await coordinator.ingest_webhook("memory", first_body, first_headers)
        ack = await coordinator.ingest_webhook("memory", second_body, second_headers)

        assert ack.accepted
        assert not ack.duplicate
        assert ack.payment_state == PaymentState.VERIFIED
        assert carrier.booking_calls == 1

    @pytest.mark.asyncio
    async def test_invalid_signature_leaves_order_untouched(
        self, coordinator, gateway, storage, cart, customer
    ):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id, signed=False)
        headers["x-memory-signature"] = "00" * 32

        with pytest.raises(InvalidSignature) as exc_info:
            await coordinator.ingest_webhook("memory", body, headers)

        assert exc_info.value.http_status == 401
        unchanged = await coordinator.get_order(order.order_id)
        assert unchanged.payment_state == PaymentState.CREATED
        assert len(storage.dedup) == 0

    @pytest.mark.asyncio
    async def test_missing_signature(self, coordinator, gateway, cart, customer):
        order = await coordinator.create_intent(cart, customer)
        body, headers = gateway.build_webhook(order.provider_order_id, signed=False)

        with pytest.raises(InvalidSignature):
            await coordinator.ingest_webhook("memory", body, headers)

    @pytest.mark.asyncio
    async def test_tampered_body(self, coordinator, gateway, cart, customer):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id)
        tampered = body.replace(b"499900", b"100")

        with pytest.raises(InvalidSignature):
            await coordinator.ingest_webhook("memory", tampered, headers)

    @pytest.mark.asyncio
    async def test_unknown_provider(self, coordinator):
        with pytest.raises(InvalidRequest):
            await coordinator.ingest_webhook("paypal", b"{}", {})

    @pytest.mark.asyncio
    async def test_unknown_order_is_acknowledged_but_not_accepted(self, coordinator):
        body, headers = _signed({"order_id": "mem_order_404", "status": "PAID", "amount": 100})

        ack = await coordinator.ingest_webhook("memory", body, headers)

        assert not ack.accepted
        assert ack.message == "Unknown order"

    @pytest.mark.asyncio
    async def test_paid_webhook_without_amount_asks_provider(
        self, coordinator, gateway, cart, customer
    ):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = _signed({"order_id": order.provider_order_id, "status": "PAID"})

        ack = await coordinator.ingest_webhook("memory", body, headers)

        assert ack.payment_state == PaymentState.VERIFIED
        assert gateway.get_calls == 1

    @pytest.mark.asyncio
    async def test_mismatched_webhook_amount_fails_order(
        self, coordinator, gateway, carrier, cart, customer
    ):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id, amount=1000)
        body, headers = gateway.build_webhook(order.provider_order_id, event_id="evt_1")

        ack = await coordinator.ingest_webhook("memory", body, headers)
        replay = await coordinator.ingest_webhook("memory", body, headers)

        assert ack.accepted
        assert ack.payment_state == PaymentState.FAILED
        assert replay.duplicate
        assert carrier.booking_calls == 0

    @pytest.mark.asyncio
    async def test_processing_error_releases_claim(self, coordinator, gateway, storage, cart, customer):
        """A failed delivery must stay redeliverable."""
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id, event_id="evt_1")

        original = storage.payments.record

        async def broken(record):
            raise RuntimeError("disk full")

        storage.payments.record = broken
        with pytest.raises(RuntimeError):
            await coordinator.ingest_webhook("memory", body, headers)

        storage.payments.record = original
        ack = await coordinator.ingest_webhook("memory", body, headers)

        assert not ack.duplicate
        assert ack.payment_state == PaymentState.VERIFIED

    @pytest.mark.asyncio
    async def test_expired_event_expires_order(self, coordinator, gateway, cart, customer):
        order = await coordinator.create_intent(cart, customer)
        body, headers = gateway.build_webhook(
            order.provider_order_id, status=ProviderStatus.EXPIRED, event_id="evt_x"
        )

        ack = await coordinator.ingest_webhook("memory", body, headers)

        assert ack.payment_state == PaymentState.EXPIRED


class TestVerificationRaces:
    """Client verification and webhook racing for the same order."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("webhook_first", [True, False])
    async def test_concurrent_verification_and_webhook(
        self, coordinator, gateway, carrier, storage, cart, customer, webhook_first
    ):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id, event_id="evt_1")

        webhook = coordinator.ingest_webhook("memory", body, headers)
        verify = coordinator.confirm_verification(order.order_id, order.provider_order_id)
        calls = [webhook, verify] if webhook_first else [verify, webhook]
        await asyncio.gather(*calls)

        final = await coordinator.get_order(order.order_id)
        assert final.payment_state == PaymentState.VERIFIED
        assert final.shipment_state == ShipmentState.BOOKED
        assert carrier.booking_calls == 1
        assert len(await storage.payments.list_records()) == 1

    @pytest.mark.asyncio
    async def test_many_concurrent_signals(self, coordinator, gateway, carrier, cart, customer):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)

        signals = []
        for index in range(5):
            body, headers = gateway.build_webhook(order.provider_order_id, event_id=f"evt_{index}")
            signals.append(coordinator.ingest_webhook("memory", body, headers))
            signals.append(coordinator.confirm_verification(order.order_id, order.provider_order_id))
        await asyncio.gather(*signals)

        history = await coordinator.order_history(order.order_id)
        assert [event.kind for event in history].count("payment.verified") == 1
        assert carrier.booking_calls == 1

    @pytest.mark.asyncio
    async def test_operator_retry_racing_auto_booking(self, coordinator, gateway, carrier, cart, customer):
        coordinator.config.auto_book_shipment = False
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_paid(order.provider_order_id)
        await coordinator.confirm_verification(order.order_id, order.provider_order_id)

        await asyncio.gather(
            coordinator.book_shipment(order.order_id),
            coordinator.retry_booking(order.order_id),
        )

        assert carrier.booking_calls == 1


class TestLatePayment:
    """PAID after the order already expired or failed."""

    @pytest.mark.asyncio
    async def test_late_payment_is_audited_not_applied(
        self, coordinator, gateway, carrier, cart, customer, caplog
    ):
        order = await coordinator.create_intent(cart, customer)
        body, headers = gateway.build_webhook(
            order.provider_order_id, status=ProviderStatus.EXPIRED, event_id="evt_exp"
        )
        await coordinator.ingest_webhook("memory", body, headers)

        gateway.mark_paid(order.provider_order_id)
        body, headers = gateway.build_webhook(order.provider_order_id, event_id="evt_paid")
        with caplog.at_level(logging.ERROR, logger="ordersaga"):
            ack = await coordinator.ingest_webhook("memory", body, headers)

        assert ack.payment_state == PaymentState.EXPIRED
        assert carrier.booking_calls == 0
        assert "Late payment" in caplog.text

        history = await coordinator.order_history(order.order_id)
        assert history[-1].kind == "late_payment"
        assert history[-1].details["amount"] == 499900

    @pytest.mark.asyncio
    async def test_verification_of_expired_order_returns_cached(
        self, coordinator, gateway, cart, customer
    ):
        order = await coordinator.create_intent(cart, customer)
        gateway.mark_status(order.provider_order_id, ProviderStatus.EXPIRED)
        await coordinator.confirm_verification(order.order_id, order.provider_order_id)
        gateway.mark_paid(order.provider_order_id)
        calls_before = gateway.get_calls

        result = await coordinator.confirm_verification(order.order_id, order.provider_order_id)

        assert result.payment_state == PaymentState.EXPIRED
        assert gateway.get_calls == calls_before
